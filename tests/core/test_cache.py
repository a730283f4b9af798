"""Tests for district_spine.core.cache.

Covers:
- Hits, misses and stats
- TTL expiry with an injected clock
- LRU eviction on entry count and byte size
- Oversized entries rejected
- get_or_compute with sync and async producers, single computation
- CacheRegistry ownership
"""

import asyncio

import pytest

from district_spine.core.cache import CacheRegistry, IntermediateCache, estimate_size_bytes


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_cache(clock, **kwargs):
    kwargs.setdefault("cleanup_interval_seconds", None)
    return IntermediateCache(name="test", clock=clock, **kwargs)


class TestBasicOperations:
    """Test get/set/has/delete."""

    def test_miss_then_hit(self, clock):
        cache = make_cache(clock)
        assert cache.get("a") is None
        assert cache.set("a", {"v": 1}) is True
        assert cache.get("a") == {"v": 1}

        stats = cache.get_stats()
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.entries == 1
        assert stats.hit_rate == 0.5

    def test_overwrite_keeps_single_entry(self, clock):
        cache = make_cache(clock)
        cache.set("a", 1)
        cache.set("a", 2)
        assert len(cache) == 1
        assert cache.get("a") == 2

    def test_delete_and_clear(self, clock):
        cache = make_cache(clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert cache.keys() == []
        assert cache.get_stats().size_bytes == 0


class TestExpiry:
    """Test TTL handling."""

    def test_entry_expires(self, clock):
        cache = make_cache(clock, default_ttl_seconds=10)
        cache.set("a", 1)
        clock.advance(9)
        assert cache.has("a") is True
        clock.advance(1)
        assert cache.has("a") is False
        assert cache.get("a") is None
        assert cache.get_stats().expirations == 1

    def test_per_entry_ttl_overrides_default(self, clock):
        cache = make_cache(clock, default_ttl_seconds=10)
        cache.set("short", 1, ttl_seconds=1)
        cache.set("forever", 2, ttl_seconds=0)
        clock.advance(100)
        assert cache.get("short") is None
        assert cache.get("forever") == 2

    def test_cleanup_expired(self, clock):
        cache = make_cache(clock, default_ttl_seconds=5)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3, ttl_seconds=0)
        clock.advance(6)
        assert cache.cleanup_expired() == 2
        assert cache.keys() == ["c"]


class TestEviction:
    """Test LRU eviction under both caps."""

    def test_entry_cap_evicts_least_recently_used(self, clock):
        cache = make_cache(clock, max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.keys() == ["a", "c"]
        assert cache.get_stats().evictions == 1

    def test_size_cap_evicts(self, clock):
        item = "x" * 40
        size = estimate_size_bytes(item)
        cache = make_cache(clock, max_size_bytes=size * 2)
        cache.set("a", item)
        cache.set("b", item)
        cache.set("c", item)
        assert cache.keys() == ["b", "c"]
        assert cache.get_stats().size_bytes <= size * 2

    def test_oversized_entry_rejected(self, clock):
        cache = make_cache(clock, max_size_bytes=10)
        assert cache.set("big", "y" * 100) is False
        assert cache.get("big") is None
        assert cache.get_stats().rejected == 1

    def test_invalid_caps(self, clock):
        with pytest.raises(ValueError):
            make_cache(clock, max_entries=0)
        with pytest.raises(ValueError):
            make_cache(clock, max_size_bytes=0)


class TestGetOrCompute:
    """Test memoization."""

    @pytest.mark.asyncio
    async def test_sync_producer(self, clock):
        cache = make_cache(clock)
        assert await cache.get_or_compute("k", lambda: 42) == 42
        assert await cache.get_or_compute("k", lambda: 0) == 42

    @pytest.mark.asyncio
    async def test_concurrent_callers_compute_once(self, clock):
        cache = make_cache(clock)
        calls = 0

        async def produce():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return "value"

        results = await asyncio.gather(*(cache.get_or_compute("k", produce) for _ in range(5)))
        assert results == ["value"] * 5
        assert calls == 1

    @pytest.mark.asyncio
    async def test_failed_compute_not_cached(self, clock):
        cache = make_cache(clock)

        async def boom():
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await cache.get_or_compute("k", boom)
        assert cache.has("k") is False


class TestCacheRegistry:
    """Test CacheRegistry."""

    def test_get_or_create_is_idempotent(self):
        registry = CacheRegistry()
        first = registry.get_or_create("idx", cleanup_interval_seconds=None)
        second = registry.get_or_create("idx", cleanup_interval_seconds=None)
        assert first is second
        assert registry.list_all() == ["idx"]

    def test_close_all_empties_registry(self):
        registry = CacheRegistry()
        registry.get_or_create("a", cleanup_interval_seconds=0.05)
        registry.close_all()
        assert registry.list_all() == []
        assert registry.get("a") is None
