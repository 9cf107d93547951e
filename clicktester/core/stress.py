"""Sustained-load stress mode.

Every worker repeatedly runs one query template until the deadline passes or
the stop signal is set. Each call substitutes a fresh value for the
cache-busting token so the server cannot answer from its query cache. Calls
are classified as success / failed / cancelled and reduced once, after all
workers have drained, into throughput and latency percentiles.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Iterator

from clicktester.connectors.clickhouse_client import ClickHouseClient
from clicktester.core.outcome import Outcome, classify_error
from clicktester.core.stats import latency_percentiles, rate
from clicktester.models.test_result import StressResult

logger = logging.getLogger(__name__)

TIME_OFFSET_PLACEHOLDER = "$time_offset_ms$"
MAX_ERROR_SAMPLES = 5


def ensure_cache_buster(base_query: str) -> str:
    """
    Make sure every generated call is textually distinct.

    Without the placeholder all calls would be identical (and cacheable), so
    an inert comment carrying the placeholder is appended.
    """
    if TIME_OFFSET_PLACEHOLDER in base_query:
        return base_query
    return f"{base_query} -- no {TIME_OFFSET_PLACEHOLDER}"


def render_query(template: str, offset: int) -> str:
    return template.replace(TIME_OFFSET_PLACEHOLDER, str(offset))


@dataclass
class _WorkerTally:
    """Per-worker accumulator, merged once at join time."""

    success: int = 0
    failed: int = 0
    cancelled: int = 0
    latencies_ms: list[float] = field(default_factory=list)


class StressRun:
    """
    One stress invocation.

    The offset counter is an unbounded Python int drawn on the event loop,
    so values are unique and gap-free across all workers.
    """

    def __init__(
        self,
        base_query: str,
        workers: int,
        query_timeout: float,
        client: ClickHouseClient,
        *,
        duration_seconds: float,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.template = ensure_cache_buster(base_query)
        self.workers = max(1, int(workers))
        self.query_timeout = float(query_timeout or 0)
        self.client = client
        self.duration_seconds = max(0.0, float(duration_seconds))
        self.stop_event = stop_event or asyncio.Event()
        self._offsets: Iterator[int] = itertools.count(1)
        self.error_samples: list[str] = []
        self._deadline = 0.0

    def next_offset(self) -> int:
        return next(self._offsets)

    def _stopped(self) -> bool:
        return self.stop_event.is_set() or time.monotonic() >= self._deadline

    def _call_timeout(self) -> float:
        remaining = max(0.0, self._deadline - time.monotonic())
        if self.query_timeout > 0:
            return min(self.query_timeout, remaining)
        return remaining

    def _record_sample(self, exc: BaseException) -> None:
        if len(self.error_samples) < MAX_ERROR_SAMPLES:
            self.error_samples.append(str(exc) or type(exc).__name__)

    async def _call(self, sql: str) -> BaseException | None:
        try:
            async with asyncio.timeout(self._call_timeout()):
                await self.client.query(sql)
        except Exception as exc:
            return exc
        return None

    async def _worker(self) -> _WorkerTally:
        tally = _WorkerTally()
        while not self._stopped():
            sql = render_query(self.template, self.next_offset())
            t0 = time.perf_counter()
            err = await self._call(sql)
            duration_ms = (time.perf_counter() - t0) * 1000

            match classify_error(err):
                case Outcome.SUCCESS:
                    tally.success += 1
                    tally.latencies_ms.append(duration_ms)
                case Outcome.CANCELLED:
                    tally.cancelled += 1
                case Outcome.FAILED:
                    tally.failed += 1
                    self._record_sample(err)
        return tally

    async def run(self) -> StressResult:
        start = time.monotonic()
        self._deadline = start + self.duration_seconds
        logger.info(
            "Stress run: workers=%d duration=%.1fs timeout=%.1fs",
            self.workers,
            self.duration_seconds,
            self.query_timeout,
        )

        tallies = await asyncio.gather(*(self._worker() for _ in range(self.workers)))
        duration_sec = time.monotonic() - start

        success = sum(t.success for t in tallies)
        failed = sum(t.failed for t in tallies)
        cancelled = sum(t.cancelled for t in tallies)
        total = success + failed + cancelled
        latencies = [ms for t in tallies for ms in t.latencies_ms]
        pct = latency_percentiles(latencies)

        result = StressResult(
            total=total,
            success=success,
            failed=failed,
            cancelled=cancelled,
            duration_sec=duration_sec,
            qps=rate(total, duration_sec),
            latency_p50_ms=pct[50],
            latency_p95_ms=pct[95],
            latency_p99_ms=pct[99],
            error_samples=list(self.error_samples),
        )
        logger.info(
            "Stress finished: total=%d success=%d failed=%d cancelled=%d qps=%.1f",
            total,
            success,
            failed,
            cancelled,
            result.qps,
        )
        return result


async def run_stress(
    base_query: str,
    workers: int,
    query_timeout: float,
    client: ClickHouseClient,
    *,
    duration_seconds: float,
    stop_event: asyncio.Event | None = None,
) -> StressResult:
    """
    Run base_query from `workers` concurrent loops for duration_seconds.

    Setting stop_event ends the run early. Workers check for the deadline or
    stop signal before each call; an in-flight call is bounded by
    min(query_timeout, time left) and counted as cancelled if that expires.
    """
    run = StressRun(
        base_query,
        workers,
        query_timeout,
        client,
        duration_seconds=duration_seconds,
        stop_event=stop_event,
    )
    return await run.run()
