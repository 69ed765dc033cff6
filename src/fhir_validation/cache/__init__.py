"""Result caching."""

from .store import CacheEntry, CacheStats, CacheStore, make_cache_key

__all__ = ["CacheEntry", "CacheStats", "CacheStore", "make_cache_key"]
