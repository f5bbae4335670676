"""
Shared request gate: backoff, jitter, circuit breaker and retry.
"""

from .circuit_breaker import CircuitBreaker, LimiterState
from .rate_limiter import ReliabilityGate

__all__ = ["CircuitBreaker", "LimiterState", "ReliabilityGate"]
