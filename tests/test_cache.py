"""
Tests for the TTL read-through cache.
"""
import pytest

from venue_pipeline.cache import CacheKeys, TTLCache


def test_get_returns_value_before_expiry(cache, clock):
    cache.set("k", {"v": 1}, ttl=10)
    clock.advance(10)

    assert cache.get("k") == {"v": 1}
    assert cache.get_stats().hits == 1


def test_expired_entry_counts_one_miss_and_is_removed(cache, clock):
    cache.set("k", "value", ttl=10)
    clock.advance(10.5)

    assert cache.get("k") is None
    stats = cache.get_stats()
    assert stats.misses == 1
    assert stats.hits == 0
    assert "k" not in stats.keys
    assert stats.size == 0


def test_zero_or_missing_ttl_uses_default(clock):
    cache = TTLCache(default_ttl=60, clock=clock)
    cache.set("a", 1, ttl=0)
    cache.set("b", 2)
    clock.advance(59)

    assert cache.get("a") == 1
    assert cache.get("b") == 2

    clock.advance(2)
    assert cache.get("a") is None
    assert cache.get("b") is None


def test_set_overwrites_and_restarts_ttl(cache, clock):
    cache.set("k", "old", ttl=10)
    clock.advance(8)
    cache.set("k", "new", ttl=10)
    clock.advance(8)

    assert cache.get("k") == "new"


def test_cleanup_removes_exactly_expired_entries(cache, clock):
    cache.set("short", 1, ttl=5)
    cache.set("medium", 2, ttl=50)
    cache.set("long", 3, ttl=500)
    clock.advance(60)

    assert cache.cleanup() == 2
    assert cache.get_stats().keys == ["long"]
    # cleanup is not a read
    assert cache.get_stats().misses == 0


def test_delete_and_clear(cache):
    cache.set("a", 1)
    cache.set("b", 2)
    cache.delete("a")
    cache.delete("missing")
    assert cache.get_stats().keys == ["b"]

    cache.clear()
    assert len(cache) == 0


def test_set_with_bad_ttl_is_ignored(cache, caplog):
    cache.set("k", "old", ttl=60)
    cache.set("k", "new", ttl="abc")

    assert cache.get("k") == "old"
    assert "Cache SET failed for k" in caplog.text


def test_delete_prefix(cache):
    cache.set(CacheKeys.discovery_stats(7), {})
    cache.set(CacheKeys.discovery_stats(30), {})
    cache.set(CacheKeys.directory_details("places/1"), {})

    assert cache.delete_prefix(CacheKeys.DISCOVERY_STATS_PREFIX) == 2
    assert cache.get_stats().keys == ["directory:details:places/1"]


def test_counters_reset_at_utc_day_boundary(cache, clock):
    cache.get("missing")
    cache.set("k", 1, ttl=10 * 24 * 3600)
    cache.get("k")
    assert (cache.get_stats().hits, cache.get_stats().misses) == (1, 1)

    clock.advance(24 * 3600)
    stats = cache.get_stats()
    assert (stats.hits, stats.misses) == (0, 0)
    assert stats.size == 1


def test_contains_respects_expiry(cache, clock):
    cache.set("k", 1, ttl=5)
    assert "k" in cache
    clock.advance(6)
    assert "k" not in cache


def test_invalid_default_ttl():
    with pytest.raises(ValueError):
        TTLCache(default_ttl=0)


@pytest.mark.asyncio
async def test_get_or_load_caches_loaded_value(cache):
    calls = []

    async def loader():
        calls.append(1)
        return "loaded"

    assert await cache.get_or_load("k", loader) == "loaded"
    assert await cache.get_or_load("k", loader) == "loaded"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_get_or_load_does_not_cache_none(cache):
    calls = []

    async def loader():
        calls.append(1)
        return None

    assert await cache.get_or_load("k", loader) is None
    assert await cache.get_or_load("k", loader) is None
    assert len(calls) == 2
    assert "k" not in cache


def test_stats_to_dict(cache):
    cache.set("k", 1)
    cache.get("k")

    assert cache.get_stats().to_dict() == {"size": 1, "keys": ["k"], "hits": 1, "misses": 0}


def test_directory_identifier_key_is_normalized():
    assert CacheKeys.directory_identifier("  12 Allen   AVENUE ") == "directory:id:12 allen avenue"
