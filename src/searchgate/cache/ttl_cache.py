"""
In-memory TTL cache for computed search results.

Entries expire lazily: an expired entry is removed on the first read after
its deadline. There is no background sweep; ``prune_expired`` can be called
explicitly by a host that wants to reclaim memory.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

import structlog

from searchgate.observability import increment

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: float


class TTLCache(Generic[T]):
    """Thread-safe key/value store where every entry carries its own lifetime."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, name: str = "results"):
        self._entries: Dict[Hashable, CacheEntry[T]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.name = name

    def get(self, key: Hashable, default: Optional[T] = None) -> Optional[T]:
        """Return the cached value, or ``default`` on a miss or an expired entry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now >= entry.expires_at:
                del self._entries[key]
                entry = None

        increment("cache_requests_total", labels={"cache": self.name, "result": "hit" if entry else "miss"})
        return entry.value if entry is not None else default

    def set(self, key: Hashable, value: T, ttl_seconds: float) -> None:
        """Store ``value`` for ``ttl_seconds``, replacing any existing entry."""
        expires_at = self._clock() + ttl_seconds
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=expires_at)

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def prune_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.debug("Pruned expired cache entries", cache=self.name, count=len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        """Number of stored entries, including expired ones not yet read."""
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()
