"""
Data models for test configuration, tasks and results.
"""

from clicktester.models.task import Task, TaskKind, TaskOptions
from clicktester.models.test_config import (
    AppConfig,
    ClickHouseConfig,
    ExecutionConfig,
    QueryTemplate,
    ReportConfig,
    StressTestConfig,
    StructureCheck,
    StructureCheckType,
    TestParams,
    Thresholds,
)
from clicktester.models.test_result import (
    PartitionInfo,
    RunResult,
    StressResult,
    TaskResult,
)

__all__ = [
    "AppConfig",
    "ClickHouseConfig",
    "ExecutionConfig",
    "PartitionInfo",
    "QueryTemplate",
    "ReportConfig",
    "RunResult",
    "StressResult",
    "StressTestConfig",
    "StructureCheck",
    "StructureCheckType",
    "Task",
    "TaskKind",
    "TaskOptions",
    "TaskResult",
    "TestParams",
    "Thresholds",
]
