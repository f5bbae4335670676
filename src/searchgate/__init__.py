"""
SearchGate - resilient pagination over rate-limit-sensitive search backends.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .client import SearchClient
from .config import Config
from .pagination import PaginationOrchestrator
from .protocols import PaginationResult, PaginationStrategy
from .recovery import ClassifiedError, classify_error
from .reliability import ReliabilityGate

__all__ = [
    "__version__",
    "ClassifiedError",
    "Config",
    "PaginationOrchestrator",
    "PaginationResult",
    "PaginationStrategy",
    "ReliabilityGate",
    "SearchClient",
    "classify_error",
]
