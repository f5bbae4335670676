"""
Core contracts and dataclasses for SearchGate.

This module defines the enums, value objects and structural protocols shared
by the reliability gate, the caches and the pagination orchestrator.

Architecture Overview:
- Error classifier turning raw failures into a closed taxonomy
- Shared rate limiter / circuit breaker gate
- TTL result cache and bounded continuation-token cache
- Sequential pagination orchestrator on top of an opaque search provider
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Protocol, Tuple, Union

# ============================================================================
# Enums and Constants
# ============================================================================


class ErrorSeverity(Enum):
    """Error severity levels for structured error handling."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorKind(Enum):
    """Closed taxonomy of classified failures."""

    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    SERVER_ERROR = "SERVER_ERROR"
    BAD_GATEWAY = "BAD_GATEWAY"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    API_ERROR = "API_ERROR"
    TIMEOUT = "TIMEOUT"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    DNS_ERROR = "DNS_ERROR"
    TOKEN_ERROR = "TOKEN_ERROR"
    RESULTS_PARSING_ERROR = "RESULTS_PARSING_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, blocking requests
    HALF_OPEN = "half_open"  # Single trial call in flight


class PaginationStrategy(Enum):
    """How a pagination run used the continuation token."""

    PRIMARY = "primary"  # Token used on every page
    FALLBACK = "fallback"  # Token abandoned before any continued page succeeded
    HYBRID = "hybrid"  # Token worked for some pages, then was abandoned


# Option key carrying the best-effort page offset for tokenless requests.
OFFSET_OPTION = "offset"


# ============================================================================
# Value Objects
# ============================================================================


@dataclass
class SearchPage:
    """One page of provider output, normalized by the provider adapter."""

    results: List[Any] = field(default_factory=list)
    continuation_token: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.results


@dataclass(frozen=True)
class PaginationResult:
    """Outcome of one pagination run. Immutable once returned."""

    results: Tuple[Any, ...]
    total_fetched: int
    pages_processed: int
    vqd_token: Optional[str]
    has_more: bool
    strategy: PaginationStrategy

    def to_dict(self, include_results: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "total_fetched": self.total_fetched,
            "pages_processed": self.pages_processed,
            "vqd_token": self.vqd_token,
            "has_more": self.has_more,
            "strategy": self.strategy.value,
        }
        if include_results:
            data["results"] = list(self.results)
        return data


@dataclass(frozen=True)
class LimiterMetrics:
    """Read-only snapshot of the shared gate, for external monitoring."""

    circuit_state: CircuitState
    failure_count: int
    consecutive_empty_results: int
    current_backoff_ms: int
    total_requests: int = 0
    empty_responses: int = 0
    backoff_activations: int = 0
    circuit_breaker_trips: int = 0
    retries_executed: int = 0
    average_response_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["circuit_state"] = self.circuit_state.value
        return data


# ============================================================================
# Protocols
# ============================================================================


class SearchProviderProtocol(Protocol):
    """
    Opaque search backend.

    ``search`` may be a plain function or a coroutine function. It returns a
    mapping or object exposing ``results`` and, optionally, a continuation
    token.
    """

    def search(
        self,
        query: str,
        options: Mapping[str, Any],
        continuation_token: Optional[str] = None,
    ) -> Union[Any, Awaitable[Any]]:
        ...


class ReportHook(Protocol):
    """Reporting hook called with lifecycle events. Sync or async."""

    def __call__(self, event: str, data: Dict[str, Any]) -> Union[None, Awaitable[None]]:
        ...
