"""Batch execution of structure checks and query tasks.

A fixed pool of async workers pulls task *indices* from a shared queue and
writes each result into the slot at that index, so the returned results are
in input order no matter which task finishes first. Database calls run on
the client's thread pool, so workers execute queries in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

from clicktester.connectors.clickhouse_client import ClickHouseClient
from clicktester.core.explain import extract_granules, projection_used
from clicktester.core.outcome import is_cancellation
from clicktester.models.task import Task, TaskKind
from clicktester.models.test_result import RunResult, TaskResult

logger = logging.getLogger(__name__)


def _error_text(exc: BaseException) -> str:
    if is_cancellation(exc):
        msg = str(exc)
        return f"timeout: {msg}" if msg else "timeout: deadline exceeded"
    return str(exc) or type(exc).__name__


class ExplainError(Exception):
    """EXPLAIN failed; the data query was not issued."""

    def __init__(self, cause: BaseException):
        super().__init__(f"EXPLAIN: {_error_text(cause)}")


STOPPED_ERROR = "cancelled: run stopped"


class RunStopped(Exception):
    """The run was stopped before this task finished."""

    def __init__(self) -> None:
        super().__init__(STOPPED_ERROR)


async def _until_stopped(coro, stop_event: asyncio.Event):
    """Await coro unless stop_event fires first; then cancel it and raise RunStopped."""
    job = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(stop_event.wait())
    try:
        done, _ = await asyncio.wait({job, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not job.done():
            job.cancel()
    if job in done:
        return job.result()
    # Let the cancelled call unwind before its slot is reported.
    await asyncio.wait({job})
    raise RunStopped()


async def _execute(task: Task, client: ClickHouseClient, tr: TaskResult) -> None:
    """Run one task, filling tr in place. Raises on the first database error."""
    if task.kind == TaskKind.STRUCTURE:
        # Schema-shape checks: read counters are not recorded.
        await client.query(task.sql)
        tr.passed = True
        return

    if task.options.collect_explain:
        try:
            explain_text = await client.explain(task.sql)
        except Exception as exc:
            raise ExplainError(exc) from exc
        tr.explain_text = explain_text
        tr.granules = extract_granules(explain_text)
        tr.projection_used = projection_used(explain_text)

    start = time.perf_counter()
    try:
        outcome = await client.query(task.sql, collect_stats=task.options.collect_stats)
    finally:
        tr.duration_ms = (time.perf_counter() - start) * 1000

    tr.passed = True
    tr.rows_returned = outcome.rows
    tr.read_rows = outcome.read_rows
    tr.read_bytes = outcome.read_bytes
    stats = outcome.stats
    if stats is not None:
        tr.query_id = stats.query_id
        tr.memory_usage = stats.memory_usage
        tr.partitions = list(stats.partitions)
        tr.partition_details = list(stats.partition_details)


async def run_one(
    task: Task,
    client: ClickHouseClient,
    query_timeout: float = 0,
    *,
    stop_event: asyncio.Event | None = None,
) -> TaskResult:
    """
    Execute a single task and return its result.

    query_timeout (seconds, > 0) bounds this task only; 0 means no deadline.
    Every error, including a timeout or an unexpected fault, becomes a failed
    result. Fields filled before the failure (e.g. EXPLAIN) are kept. Once
    stop_event is set the task is cut short (or never started) and reported
    as failed with STOPPED_ERROR.
    """
    tr = TaskResult(
        task_id=task.id,
        name=task.name,
        description=task.description,
        kind=task.kind,
        query=task.sql,
    )
    if task.kind not in (TaskKind.STRUCTURE, TaskKind.QUERY):
        tr.error = f"unknown task type: {task.kind}"
        return tr
    if stop_event is not None and stop_event.is_set():
        tr.error = STOPPED_ERROR
        return tr

    try:
        async with asyncio.timeout(query_timeout if query_timeout > 0 else None):
            if stop_event is None:
                await _execute(task, client, tr)
            else:
                await _until_stopped(_execute(task, client, tr), stop_event)
    except (ExplainError, RunStopped) as exc:
        tr.passed = False
        tr.error = str(exc)
    except Exception as exc:
        tr.passed = False
        explain_pending = (
            task.kind == TaskKind.QUERY
            and task.options.collect_explain
            and tr.explain_text is None
        )
        tr.error = str(ExplainError(exc)) if explain_pending else _error_text(exc)

    if tr.error:
        logger.debug("Task %d (%s) failed: %s", task.id, task.name, tr.error)
    return tr


async def run_tasks(
    tasks: Sequence[Task],
    workers: int,
    client: ClickHouseClient,
    query_timeout: float = 0,
    *,
    stop_event: asyncio.Event | None = None,
) -> RunResult:
    """
    Run every task exactly once on a pool of `workers` and aggregate results.

    Returns a RunResult whose results[i] belongs to tasks[i]. Workers are
    clamped to at least 1; an empty task list returns a zeroed RunResult
    without starting any worker.

    Setting stop_event stops the run early: in-flight tasks are cancelled and
    queued ones are not started, but each still gets a failed result, so the
    RunResult stays complete. Cancelling the calling task itself propagates.
    """
    workers = max(1, int(workers))
    n = len(tasks)
    if n == 0:
        return RunResult()

    queue: asyncio.Queue[int] = asyncio.Queue()
    for i in range(n):
        queue.put_nowait(i)
    slots: list[TaskResult | None] = [None] * n

    async def _worker() -> None:
        while True:
            try:
                i = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            slots[i] = await run_one(
                tasks[i], client, query_timeout, stop_event=stop_event
            )

    pool_size = min(workers, n)
    logger.info("Running %d tasks with %d workers", n, pool_size)
    t0 = time.perf_counter()
    await asyncio.gather(*(_worker() for _ in range(pool_size)))

    results = [r for r in slots if r is not None]
    if len(results) != n:
        raise RuntimeError(f"runner lost results: {len(results)}/{n}")
    run_result = RunResult.from_results(results)
    logger.info(
        "Finished %d tasks in %.2fs: passed=%d failed=%d",
        run_result.total,
        time.perf_counter() - t0,
        run_result.passed,
        run_result.failed,
    )
    return run_result
