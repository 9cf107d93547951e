"""Report writers (HTML, JSON) and console summaries."""

from clicktester.reports.html_report import render_html, row_status, write_html
from clicktester.reports.json_report import build_export, json_path_for, write_json
from clicktester.reports.meta import ReportMeta
from clicktester.reports.stress_summary import render_error_samples, render_stress_summary

__all__ = [
    "ReportMeta",
    "build_export",
    "json_path_for",
    "render_error_samples",
    "render_html",
    "render_stress_summary",
    "row_status",
    "write_html",
    "write_json",
]
