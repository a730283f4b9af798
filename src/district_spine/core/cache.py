"""
Intermediate result cache with TTL, size bounds and LRU eviction.

Per-date fetches and index reads are expensive and repeat within a job run.
``IntermediateCache[T]`` memoizes them in-process under hard caps on both
entry count and estimated byte size.

Manifesto:
    - **Typed:** one value type per cache instance (``IntermediateCache[DistrictIndex]``)
    - **Bounded:** ``max_entries`` and ``max_size_bytes`` both enforced on insert
    - **Honest expiry:** an expired entry is invisible even before the sweep runs
    - **Registry-owned:** named caches live in a :class:`CacheRegistry` injected
      by the composition root, not in module globals

Architecture:
    ::

        IntermediateCache[T]
          ├── OrderedDict[str, CacheEntry[T]]   ← LRU order (oldest first)
          ├── get / has                         ← lazy expiry on read
          ├── set                               ← evict LRU until both caps fit
          ├── get_or_compute (async)            ← per-key lock, single compute
          └── sweeper thread                    ← purge expired every interval

Performance:
    - get/set: O(1) amortised, plus evictions
    - Size estimate: O(n) in the serialized size of the value

Guardrails:
    ❌ DON'T: Treat ``size_bytes`` as exact memory accounting
    ✅ DO: Read it as a JSON-length heuristic (structural sharing is ignored)

    ❌ DON'T: Forget to ``close()`` caches created outside a registry
    ✅ DO: Let the registry close them on shutdown

Tags:
    cache, lru, ttl, memoization, generic
"""

from __future__ import annotations

import asyncio
import inspect
import json
import threading
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from district_spine.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_MISSING = object()


def estimate_size_bytes(value: Any) -> int:
    """Best-effort size estimate: UTF-8 length of the JSON serialization."""
    try:
        return len(json.dumps(value, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return len(repr(value).encode("utf-8"))


@dataclass
class CacheEntry(Generic[T]):
    """One memoized value."""

    data: T
    created_at: float
    expires_at: float | None
    size_bytes: int
    access_count: int = 0
    last_accessed: float = 0.0

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class CacheStats:
    """Counters for cache observability."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    rejected: int = 0
    entries: int = 0
    size_bytes: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "rejected": self.rejected,
            "entries": self.entries,
            "size_bytes": self.size_bytes,
            "hit_rate": self.hit_rate,
        }


class IntermediateCache(Generic[T]):
    """Bounded key→value cache with TTL and LRU eviction.

    Args:
        name: Identifier used in logs and by :class:`CacheRegistry`.
        default_ttl_seconds: TTL applied when ``set`` gets none; 0 never expires.
        max_entries: Hard cap on entry count.
        max_size_bytes: Hard cap on total estimated size.
        cleanup_interval_seconds: Background sweep period; None disables it.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        *,
        name: str = "default",
        default_ttl_seconds: float = 0,
        max_entries: int = 1000,
        max_size_bytes: int = 50 * 1024 * 1024,
        cleanup_interval_seconds: float | None = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if max_size_bytes <= 0:
            raise ValueError("max_size_bytes must be positive")

        self.name = name
        self._default_ttl = default_ttl_seconds
        self._max_entries = max_entries
        self._max_size_bytes = max_size_bytes
        self._clock = clock

        self._entries: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._size_bytes = 0
        self._stats = CacheStats()
        self._lock = threading.RLock()
        self._key_locks: dict[str, asyncio.Lock] = {}

        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        if cleanup_interval_seconds:
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(cleanup_interval_seconds,),
                name=f"cache-sweep-{name}",
                daemon=True,
            )
            self._sweeper.start()

    # ── Reads ────────────────────────────────────────────────────────

    def get(self, key: str) -> T | None:
        """Value for ``key``, or None when missing or expired."""
        value = self._lookup(key)
        return None if value is _MISSING else value

    def has(self, key: str) -> bool:
        """True when ``key`` holds a live (unexpired) entry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                self._remove(key, expired=True)
                return False
            return True

    def _lookup(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return _MISSING

            now = self._clock()
            if entry.is_expired(now):
                self._remove(key, expired=True)
                self._stats.misses += 1
                return _MISSING

            entry.access_count += 1
            entry.last_accessed = now
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return entry.data

    # ── Writes ───────────────────────────────────────────────────────

    def set(self, key: str, value: T, ttl_seconds: float | None = None) -> bool:
        """Store ``value``. Returns False if it alone exceeds ``max_size_bytes``."""
        size = estimate_size_bytes(value)
        if size > self._max_size_bytes:
            with self._lock:
                self._stats.rejected += 1
            logger.warning(
                "cache.entry_too_large",
                cache=self.name,
                key=key,
                size_bytes=size,
                max_size_bytes=self._max_size_bytes,
            )
            return False

        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        now = self._clock()
        entry = CacheEntry(
            data=value,
            created_at=now,
            expires_at=(now + ttl) if ttl and ttl > 0 else None,
            size_bytes=size,
            last_accessed=now,
        )

        with self._lock:
            if key in self._entries:
                self._remove(key)

            while self._entries and (
                len(self._entries) + 1 > self._max_entries
                or self._size_bytes + size > self._max_size_bytes
            ):
                lru_key = next(iter(self._entries))
                self._remove(lru_key)
                self._stats.evictions += 1

            self._entries[key] = entry
            self._size_bytes += size
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._size_bytes = 0

    def _remove(self, key: str, *, expired: bool = False) -> None:
        entry = self._entries.pop(key)
        self._size_bytes -= entry.size_bytes
        if expired:
            self._stats.expirations += 1

    # ── Memoization ──────────────────────────────────────────────────

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[T] | T],
        ttl_seconds: float | None = None,
    ) -> T:
        """Return the cached value or compute, store and return it.

        Concurrent callers for the same key wait on one computation.
        """
        value = self._lookup(key)
        if value is not _MISSING:
            return value

        lock = self._key_locks.setdefault(key, asyncio.Lock())
        async with lock:
            value = self._lookup(key)
            if value is not _MISSING:
                return value

            result = compute()
            if inspect.isawaitable(result):
                result = await result
            self.set(key, result, ttl_seconds)

        if not lock.locked():
            self._key_locks.pop(key, None)
        return result

    # ── Maintenance ──────────────────────────────────────────────────

    def cleanup_expired(self) -> int:
        """Purge every expired entry now. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._remove(key, expired=True)
        if expired:
            logger.debug("cache.swept", cache=self.name, removed=len(expired))
        return len(expired)

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            self.cleanup_expired()

    def close(self) -> None:
        """Stop the background sweep."""
        self._stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=1.0)

    def get_stats(self) -> CacheStats:
        with self._lock:
            self._stats.entries = len(self._entries)
            self._stats.size_bytes = self._size_bytes
            return CacheStats(**{k: getattr(self._stats, k) for k in (
                "hits", "misses", "evictions", "expirations",
                "rejected", "entries", "size_bytes",
            )})

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CacheRegistry:
    """Registry of named caches, owned by the composition root."""

    def __init__(self) -> None:
        self._caches: dict[str, IntermediateCache[Any]] = {}
        self._lock = threading.RLock()

    def get(self, name: str) -> IntermediateCache[Any] | None:
        with self._lock:
            return self._caches.get(name)

    def get_or_create(self, name: str, **kwargs: Any) -> IntermediateCache[Any]:
        with self._lock:
            if name not in self._caches:
                self._caches[name] = IntermediateCache(name=name, **kwargs)
            return self._caches[name]

    def list_all(self) -> list[str]:
        with self._lock:
            return list(self._caches.keys())

    def remove(self, name: str) -> None:
        with self._lock:
            cache = self._caches.pop(name, None)
        if cache is not None:
            cache.close()

    def close_all(self) -> None:
        with self._lock:
            caches = list(self._caches.values())
            self._caches.clear()
        for cache in caches:
            cache.close()


__all__ = [
    "CacheEntry",
    "CacheStats",
    "CacheRegistry",
    "IntermediateCache",
    "estimate_size_bytes",
]
