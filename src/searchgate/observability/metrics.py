"""
Defines Prometheus metrics for the gate, the caches and the orchestrator.
"""

from __future__ import annotations

from typing import Any, Dict

from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Reusing an already registered collector keeps module reloads (tests, hot
# reload in a host process) from failing with duplicate registration errors.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "provider_requests_total": Counter(
            "searchgate_provider_requests_total",
            "Provider calls by outcome (success, empty, failure, token_rejected)",
            ["outcome"],
        ),
        "provider_latency_seconds": Histogram(
            "searchgate_provider_latency_seconds",
            "Time taken by a single provider call",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
        ),
        "pages_fetched_total": Counter(
            "searchgate_pages_fetched_total",
            "Result pages appended by the pagination orchestrator",
        ),
        "pagination_runs_total": Counter(
            "searchgate_pagination_runs_total",
            "Completed pagination runs by strategy",
            ["strategy"],
        ),
        "errors_total": Counter(
            "searchgate_errors_total",
            "Classified errors surfaced to callers by kind",
            ["kind"],
        ),
        "circuit_breaker_trips_total": Counter(
            "searchgate_circuit_breaker_trips_total",
            "Transitions of the shared circuit breaker into the open state",
        ),
        "circuit_blocked_total": Counter(
            "searchgate_circuit_blocked_total",
            "Calls refused by the gate while the circuit was open",
        ),
        "rate_limited_total": Counter(
            "searchgate_rate_limited_total",
            "Calls refused because the operation exhausted its request window",
            ["operation"],
        ),
        "circuit_state": Gauge(
            "searchgate_circuit_state",
            "Current circuit state (0=closed, 1=half_open, 2=open)",
        ),
        "backoff_activations_total": Counter(
            "searchgate_backoff_activations_total",
            "Gate checks that applied an empty-result backoff delay",
        ),
        "retries_total": Counter(
            "searchgate_retries_total",
            "Retries executed by the gate retry wrapper",
        ),
        "cache_requests_total": Counter(
            "searchgate_cache_requests_total",
            "Cache lookups by cache and result",
            ["cache", "result"],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()
