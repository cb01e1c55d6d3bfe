"""Tests for the TTL cache."""

from __future__ import annotations

import pytest

from flowrunner.prompt_engine.cache import TTLCache


class TestTTLCache:
    """Test the TTLCache class directly."""

    def test_get_set(self, ttl_cache):
        ttl_cache.set("a", 1)
        assert ttl_cache.get("a") == 1
        assert ttl_cache.hits == 1

    def test_miss(self, ttl_cache):
        assert ttl_cache.get("nope") is None
        assert ttl_cache.misses == 1

    def test_expiry(self, ttl_cache, clock):
        ttl_cache.set("a", 1)
        clock.advance(59)
        assert ttl_cache.get("a") == 1
        clock.advance(1)
        assert ttl_cache.get("a") is None
        assert len(ttl_cache) == 0

    def test_overwrite_refreshes_age(self, ttl_cache, clock):
        ttl_cache.set("a", 1)
        clock.advance(50)
        ttl_cache.set("a", 2)
        clock.advance(50)
        assert ttl_cache.get("a") == 2

    def test_evicts_oldest_over_capacity(self, ttl_cache):
        for key in "abcd":
            ttl_cache.set(key, key)
        assert "a" not in ttl_cache
        assert list(ttl_cache.keys()) == ["b", "c", "d"]
        assert ttl_cache.evictions == 1

    def test_expired_entries_purged_before_oldest(self, ttl_cache, clock):
        ttl_cache.set("a", 1)
        clock.advance(30)
        ttl_cache.set("b", 2)
        ttl_cache.set("c", 3)
        clock.advance(30)
        ttl_cache.set("d", 4)
        # "a" expired; "b", "c", "d" are all still fresh
        assert list(ttl_cache.keys()) == ["b", "c", "d"]

    def test_invalidate_all(self, ttl_cache):
        ttl_cache.set("a", 1)
        ttl_cache.set("b", 2)
        assert ttl_cache.invalidate() == 2
        assert len(ttl_cache) == 0

    def test_invalidate_predicate(self, ttl_cache):
        ttl_cache.set("c1:10", [])
        ttl_cache.set("c1:5", [])
        ttl_cache.set("c2:10", [])
        assert ttl_cache.invalidate(lambda k: k.startswith("c1:")) == 2
        assert list(ttl_cache.keys()) == ["c2:10"]

    def test_peek_does_not_count(self, ttl_cache):
        ttl_cache.set("a", 1)
        assert ttl_cache.peek("a") == 1
        assert ttl_cache.hits == 0

    def test_delete(self, ttl_cache):
        ttl_cache.set("a", 1)
        assert ttl_cache.delete("a") is True
        assert ttl_cache.delete("a") is False

    def test_stats(self, ttl_cache):
        ttl_cache.set("a", 1)
        ttl_cache.get("a")
        ttl_cache.get("b")
        stats = ttl_cache.stats()
        assert stats["size"] == 1
        assert stats["hit_rate"] == 0.5

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            TTLCache(ttl_seconds=1, max_size=0)
