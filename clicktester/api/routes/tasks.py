"""
API routes for the local control page: list tasks and run a selection.
"""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from clicktester.core.runner import run_tasks
from clicktester.models.task import Task
from clicktester.models.test_result import RunResult

logger = logging.getLogger(__name__)

router = APIRouter()


class TaskItem(BaseModel):
    id: int
    name: str
    description: str
    type: str
    query: str

    @classmethod
    def from_task(cls, task: Task) -> "TaskItem":
        return cls(
            id=task.id,
            name=task.name,
            description=task.description,
            type=task.kind.value,
            query=task.sql,
        )


class RunRequest(BaseModel):
    """Body of POST /api/run. Empty or absent ``taskIDs`` runs every task."""

    model_config = ConfigDict(populate_by_name=True)

    task_ids: List[int] = Field(default_factory=list, alias="taskIDs")


def select_tasks(tasks: List[Task], task_ids: List[int]) -> List[Task]:
    """Tasks whose id is in task_ids, in configured order; unknown ids are ignored."""
    if not task_ids:
        return list(tasks)
    wanted = set(task_ids)
    return [t for t in tasks if t.id in wanted]


@router.get("/tasks", response_model=List[TaskItem])
async def list_tasks(request: Request) -> List[TaskItem]:
    ctx = request.app.state.ctx
    return [TaskItem.from_task(t) for t in ctx.tasks]


@router.post("/run", response_model=RunResult)
async def run_selected(body: RunRequest, request: Request) -> RunResult:
    """
    Run the selected tasks with the configured worker count and timeout.

    Individual task failures are part of the result; only an engine fault is
    reported as HTTP 500.
    """
    ctx = request.app.state.ctx
    selected = select_tasks(ctx.tasks, body.task_ids)
    if not selected:
        return RunResult()

    logger.info("Run requested for %d task(s)", len(selected))
    try:
        return await run_tasks(selected, ctx.workers, ctx.client, ctx.query_timeout)
    except Exception as e:
        logger.exception("Run failed")
        raise HTTPException(status_code=500, detail=str(e))
