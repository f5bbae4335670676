"""
Error taxonomy and classification for SearchGate.

Turns raw provider and transport failures into typed, retry-aware errors.
"""

from .classifier import classify_error
from .errors import (
    CircuitOpenError,
    ClassifiedError,
    InvalidInputError,
    ProviderResponseError,
    RateLimitExceededError,
)

__all__ = [
    "classify_error",
    "ClassifiedError",
    "CircuitOpenError",
    "InvalidInputError",
    "ProviderResponseError",
    "RateLimitExceededError",
]
