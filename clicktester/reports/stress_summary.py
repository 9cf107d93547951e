"""
Console rendering of a stress run.
"""

from typing import List

from clicktester.models.test_result import StressResult


def render_stress_summary(result: StressResult) -> str:
    return (
        f"Stress: total={result.total} success={result.success} "
        f"failed={result.failed} cancelled={result.cancelled} | "
        f"{result.duration_sec:.1f}s, {result.qps:.1f} qps | "
        f"p50={result.latency_p50_ms:.1f}ms p95={result.latency_p95_ms:.1f}ms "
        f"p99={result.latency_p99_ms:.1f}ms"
    )


def render_error_samples(result: StressResult) -> List[str]:
    return [f"  error: {sample}" for sample in result.error_samples]
