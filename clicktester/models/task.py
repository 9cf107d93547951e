"""
Task descriptors consumed by the execution engine.
"""

from dataclasses import dataclass, field
from enum import Enum


class TaskKind(str, Enum):
    """Task kinds understood by the runner (closed set)."""

    STRUCTURE = "structure"
    QUERY = "query"


@dataclass(frozen=True)
class TaskOptions:
    """Metric collection options for query tasks."""

    collect_explain: bool = False
    collect_stats: bool = False


@dataclass(frozen=True)
class Task:
    """A single unit of work: a structure check or a parametrized query."""

    id: int
    name: str
    description: str
    kind: TaskKind
    sql: str
    options: TaskOptions = field(default_factory=TaskOptions)
