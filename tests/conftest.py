"""
Shared test configuration for SearchGate.

Provides a controllable clock, a sleep that records instead of waiting, and
a scripted search provider so the gate and the orchestrator can be driven
deterministically.
"""

# Standard library imports
import random
from typing import Any, Callable, Dict

# Third-party imports
import pytest
import structlog

# Local imports
from searchgate.cache import TokenCache
from searchgate.config import PaginationOptions, ReliabilityConfig
from searchgate.reliability import ReliabilityGate

from tests.helpers import FakeClock, RecordingSleep

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


@pytest.fixture(autouse=True)
def reset_log_context():
    """Keep bound structlog context from leaking between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def reliability_config() -> ReliabilityConfig:
    """Fast, deterministic gate settings."""
    return ReliabilityConfig(
        empty_result_threshold=3,
        initial_backoff_ms=1000,
        max_backoff_ms=8000,
        min_jitter_ms=100,
        max_jitter_ms=500,
        failure_threshold=3,
        circuit_reset_timeout_ms=60000,
        max_retries=2,
        retry_delay_ms=100,
        operation_limits={},
    )


@pytest.fixture
def gate(reliability_config: ReliabilityConfig, clock: FakeClock, sleep: RecordingSleep) -> ReliabilityGate:
    return ReliabilityGate(reliability_config, clock=clock, sleep=sleep, rng=random.Random(42))


@pytest.fixture
def token_cache(clock: FakeClock) -> TokenCache:
    return TokenCache(max_entries=10, max_age_seconds=300, clock=clock)


@pytest.fixture
def pagination_options() -> Callable[..., PaginationOptions]:
    """Factory for pagination options without inter-page pauses."""

    def _make(**overrides: Any) -> PaginationOptions:
        values: Dict[str, Any] = {
            "max_results": 25,
            "page_size": 10,
            "max_pages": 3,
            "delay_between_requests_ms": 0,
            "jitter_between_requests": False,
        }
        values.update(overrides)
        return PaginationOptions(**values)

    return _make
