"""
Bounded cache of continuation tokens keyed by a query fingerprint.

A continuation token lets the backend serve follow-up pages of the same
logical query. Tokens are reused across pagination runs for the same
fingerprint until the backend rejects them or they age out.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

import structlog

from searchgate.observability import increment
from searchgate.protocols import OFFSET_OPTION

logger = structlog.get_logger(__name__)


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split()).lower()
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def fingerprint(query: str, options: Optional[Mapping[str, Any]] = None) -> str:
    """
    Stable key for a query and the provider options that shape its results.

    Case and whitespace are normalized; ``None`` values and the transient
    page offset are ignored so tokenless retries map onto the same key.
    """
    normalized_options = {
        key: value for key, value in _normalize(dict(options or {})).items() if key != OFFSET_OPTION
    }
    payload = json.dumps(
        {"query": _normalize(query), "options": normalized_options},
        sort_keys=True,
        default=str,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class TokenCacheEntry:
    token: str
    fingerprint: str
    created_at: float


class TokenCache:
    """Fingerprint -> continuation token, evicting the oldest insertion when full."""

    def __init__(
        self,
        max_entries: int = 100,
        max_age_seconds: Optional[float] = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, TokenCacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        """Cached token for ``key``; tokens past ``max_age_seconds`` count as absent."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self.max_age_seconds is not None:
                if now - entry.created_at >= self.max_age_seconds:
                    del self._entries[key]
                    entry = None

        increment("cache_requests_total", labels={"cache": "token", "result": "hit" if entry else "miss"})
        return entry.token if entry is not None else None

    def set(self, key: str, token: str) -> None:
        now = self._clock()
        with self._lock:
            # Re-inserting moves the key to the newest position
            self._entries.pop(key, None)
            self._entries[key] = TokenCacheEntry(token=token, fingerprint=key, created_at=now)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted continuation token", fingerprint=evicted[:12])

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()
