"""
Helpers asserting that Prometheus metrics move while code under test runs.

Metrics are process-global, so tests compare values before and after a
block instead of asserting absolute values.
"""

from contextlib import contextmanager
from typing import Any, Optional


def sample_value(metric: Any, suffix: str = "", **labels: str) -> float:
    """Current value of a metric sample, 0.0 if it has not been recorded yet."""
    for family in metric.collect():
        for sample in family.samples:
            if suffix and not sample.name.endswith(suffix):
                continue
            if all(sample.labels.get(k) == v for k, v in labels.items()):
                return sample.value
    return 0.0


@contextmanager
def metric_delta(metric: Any, expected_delta: float = 1, **labels: str):
    """
    Assert that a counter changes by exactly ``expected_delta``.

    Usage:
        with metric_delta(METRICS["retries_total"], 2):
            await gate.with_retry(flaky_operation)

        with metric_delta(METRICS["provider_requests_total"], 1, outcome="empty"):
            ...
    """
    before = sample_value(metric, "_total", **labels)
    yield
    after = sample_value(metric, "_total", **labels)
    if after - before != expected_delta:
        raise AssertionError(
            f"Expected metric to change by {expected_delta}, but it changed by {after - before} "
            f"(from {before} to {after})"
        )


@contextmanager
def histogram_observes(histogram: Any, min_observations: int = 1, labels: Optional[dict] = None):
    """Assert that a histogram records at least ``min_observations`` samples."""
    before = sample_value(histogram, "_count", **(labels or {}))
    yield
    observed = sample_value(histogram, "_count", **(labels or {})) - before
    if observed < min_observations:
        raise AssertionError(f"Expected at least {min_observations} histogram observations, but got {observed}")
