"""
HTML report rendering.

Rows are rendered with Jinja2 (autoescaped) from ``templates/report.html``.
Each row gets an ok/warn/fail status derived from the pass flag and the
configured thresholds.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from clicktester.models.task import TaskKind
from clicktester.models.test_result import RunResult, TaskResult
from clicktester.reports.meta import ReportMeta

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
PLACEHOLDER = "-"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def row_status(result: TaskResult, meta: ReportMeta) -> str:
    """ok / warn / fail; a threshold of 0 is disabled."""
    if not result.passed:
        return "fail"
    if meta.granules_fail > 0 and result.granules >= meta.granules_fail:
        return "fail"
    if (meta.granules_warn > 0 and result.granules >= meta.granules_warn) or (
        meta.read_rows_warn > 0 and result.read_rows >= meta.read_rows_warn
    ):
        return "warn"
    return "ok"


def _row_view(result: TaskResult, meta: ReportMeta) -> dict[str, Any]:
    is_query = result.kind == TaskKind.QUERY
    if result.read_bytes > 0:
        read_mb = f"{result.read_bytes / (1024 * 1024):.2f}"
    elif is_query:
        read_mb = "0.00"
    else:
        read_mb = PLACEHOLDER

    return {
        "task_id": result.task_id,
        "name": result.name,
        "description": result.description,
        "type": result.kind.value,
        "status": row_status(result, meta),
        "error": result.error or "",
        "granules": result.granules if is_query else PLACEHOLDER,
        "read_rows": result.read_rows if is_query else PLACEHOLDER,
        "read_mb": read_mb,
        "duration": f"{result.duration_ms:.2f}" if result.duration_ms > 0 else PLACEHOLDER,
        "rows_returned": result.rows_returned if is_query else PLACEHOLDER,
        "explain_text": result.explain_text or "",
    }


def render_html(run_result: RunResult, meta: Optional[ReportMeta] = None) -> str:
    meta = meta or ReportMeta()
    template = _env.get_template("report.html")
    return template.render(
        meta=meta,
        total=run_result.total,
        passed=run_result.passed,
        failed=run_result.failed,
        rows=[_row_view(r, meta) for r in run_result.results],
    )


def write_html(
    output_path: str | Path, run_result: RunResult, meta: Optional[ReportMeta] = None
) -> Path:
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_html(run_result, meta), encoding="utf-8")
    logger.info("HTML report written to %s", path)
    return path
