"""Content-addressed TTL cache for terminology validation results."""

from __future__ import annotations

import asyncio
import hashlib
import time
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog

from fhir_validation.observability.metrics import TERMINOLOGY_CACHE_LOOKUPS_TOTAL

logger = structlog.get_logger(__name__)

V = TypeVar("V")

DEFAULT_TTL_SECONDS = 3600.0


def make_cache_key(
    code: str,
    system: str,
    value_set: str | None = None,
    server: str | None = None,
    version: str | None = None,
) -> str:
    """Stable sha256 key over the inputs that determine a validation result."""
    material = "|".join((system, code, value_set or "", server or "", version or ""))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class CacheEntry(Generic[V]):
    key: str
    value: V
    stored_at: float
    ttl: float | None
    is_offline_entry: bool = False

    def is_expired(self, now: float) -> bool:
        if self.is_offline_entry or self.ttl is None:
            return False
        return now - self.stored_at >= self.ttl


@dataclass(frozen=True, slots=True)
class CacheStats:
    hits: int
    misses: int
    entries: int
    evictions: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class CacheStore(Generic[V]):
    """In-memory cache with TTL expiry and LRU eviction.

    Offline entries never expire; they are still subject to LRU eviction once
    ``max_entries`` is exceeded.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry[V]] = OrderedDict()
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    async def get(self, key: str) -> V | None:
        return await self.get_any((key,))

    async def get_any(self, keys: Sequence[str]) -> V | None:
        """Return the first live value among ``keys``; counts as one lookup."""
        async with self._lock:
            now = self._clock()
            for key in keys:
                entry = self._entries.get(key)
                if entry is None:
                    continue
                if entry.is_expired(now):
                    del self._entries[key]
                    continue
                self._entries.move_to_end(key)
                self._hits += 1
                TERMINOLOGY_CACHE_LOOKUPS_TOTAL.labels(result="hit").inc()
                return entry.value
            self._misses += 1
            TERMINOLOGY_CACHE_LOOKUPS_TOTAL.labels(result="miss").inc()
            return None

    async def set(
        self,
        key: str,
        value: V,
        *,
        offline: bool = False,
        ttl: float | None = None,
    ) -> None:
        async with self._lock:
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                stored_at=self._clock(),
                ttl=None if offline else (ttl if ttl is not None else self._ttl),
                is_offline_entry=offline,
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("cache.evicted", key=evicted)

    async def get_entry(self, key: str) -> CacheEntry[V] | None:
        """Raw entry lookup that does not count towards hit statistics."""
        async with self._lock:
            return self._entries.get(key)

    async def invalidate(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self, *, offline_only: bool = False) -> int:
        async with self._lock:
            if not offline_only:
                removed = len(self._entries)
                self._entries.clear()
                return removed
            keys = [key for key, entry in self._entries.items() if entry.is_offline_entry]
            for key in keys:
                del self._entries[key]
            return len(keys)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("cache.purged", removed=len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            entries=len(self._entries),
            evictions=self._evictions,
        )

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["CacheEntry", "CacheStats", "CacheStore", "DEFAULT_TTL_SECONDS", "make_cache_key"]
