"""
JSON export of a batch run: ``{meta, total, passed, failed, results}``.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from clicktester.models.test_result import RunResult
from clicktester.reports.meta import ReportMeta

logger = logging.getLogger(__name__)


def json_path_for(html_path: str | Path) -> Path:
    """report.html -> report.json; any other name gets ``.json`` appended."""
    path = Path(html_path)
    if path.suffix.lower() == ".html":
        return path.with_suffix(".json")
    return path.with_name(path.name + ".json")


def build_export(run_result: RunResult, meta: Optional[ReportMeta] = None) -> dict[str, Any]:
    return {
        "meta": (meta or ReportMeta(generated_at="")).model_dump(),
        "total": run_result.total,
        "passed": run_result.passed,
        "failed": run_result.failed,
        "results": [r.model_dump(mode="json", by_alias=True) for r in run_result.results],
    }


def write_json(
    output_path: str | Path, run_result: RunResult, meta: Optional[ReportMeta] = None
) -> Path:
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(build_export(run_result, meta), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    logger.info("JSON report written to %s", path)
    return path
