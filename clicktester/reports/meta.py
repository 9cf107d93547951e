"""
Report header metadata shared by the HTML and JSON writers.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from clicktester.models.test_config import AppConfig

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _now() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


class ReportMeta(BaseModel):
    """Run context printed in the report header; thresholds drive row status."""

    generated_at: str = Field(default_factory=_now)
    host: str = ""
    database: str = ""
    table: str = ""
    workers: int = 0
    granules_warn: int = 0
    granules_fail: int = 0
    read_rows_warn: int = 0

    @classmethod
    def from_config(cls, cfg: AppConfig, workers: int) -> "ReportMeta":
        thresholds = cfg.report.thresholds
        return cls(
            host=cfg.clickhouse.host,
            database=cfg.clickhouse.database,
            table=cfg.clickhouse.table_name,
            workers=workers,
            granules_warn=thresholds.granules_warn,
            granules_fail=thresholds.granules_fail,
            read_rows_warn=thresholds.read_rows_warn,
        )
