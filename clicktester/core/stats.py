"""
Numeric reductions for stress results.
"""

from __future__ import annotations

from typing import Sequence


def percentile(sorted_values: Sequence[float], p: int) -> float:
    """
    Order-statistic percentile over an ascending-sorted sequence.

    Index is floor(n * p / 100) clamped to n - 1, no interpolation:
    [10, 20, 30, 40, 50] gives p50 -> 30 and p99 -> 50. Empty input gives 0.
    """
    n = len(sorted_values)
    if n == 0:
        return 0.0
    idx = min((n * p) // 100, n - 1)
    return float(sorted_values[idx])


def latency_percentiles(
    latencies_ms: Sequence[float], points: Sequence[int] = (50, 95, 99)
) -> dict[int, float]:
    xs = sorted(latencies_ms)
    return {p: percentile(xs, p) for p in points}


def rate(count: int, seconds: float) -> float:
    """Events per second, 0 when no time elapsed."""
    if seconds <= 0:
        return 0.0
    return count / seconds
