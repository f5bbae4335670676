from .token_cache import TokenCache, TokenCacheEntry, fingerprint
from .ttl_cache import CacheEntry, TTLCache

__all__ = ["CacheEntry", "TTLCache", "TokenCache", "TokenCacheEntry", "fingerprint"]
