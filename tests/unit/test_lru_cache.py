"""
Unit Tests for the bounded LRU cache.
"""

import pytest

from research_agents.lru_cache import LRUCache


class TestLRUCacheBasics:
    """Get/set/delete semantics."""

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            LRUCache(0)

    def test_get_missing_returns_none(self):
        cache = LRUCache(2)
        assert cache.get("missing") is None

    def test_set_then_get(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache
        assert len(cache) == 1

    def test_update_existing_key_keeps_size(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        cache.set("a", 2)
        assert cache.get("a") == 2
        assert cache.size == 1

    def test_delete(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        assert cache.get("a") is None

    def test_clear(self):
        cache = LRUCache(3)
        for key in "abc":
            cache.set(key, key)
        cache.clear()
        assert cache.size == 0
        assert cache.keys() == []


class TestLRUEviction:
    """Recency ordering and eviction."""

    def test_evicts_least_recently_used(self):
        """Capacity 2: set a, set b, get a, set c -> b evicted."""
        cache = LRUCache(2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3
        assert cache.size == 2

    def test_size_never_exceeds_capacity(self):
        cache = LRUCache(3)
        for i in range(20):
            cache.set(i, i)
            assert cache.size <= 3
        assert cache.keys() == [19, 18, 17]
        assert cache.get_stats()["evictions"] == 17

    def test_update_promotes_entry(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 10

    def test_has_does_not_promote(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.has("a")
        cache.set("c", 3)
        assert not cache.has("a")

    def test_keys_most_recent_first(self):
        cache = LRUCache(3)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        cache.get("a")
        assert cache.keys() == ["a", "c", "b"]
        assert cache.values() == [1, 3, 2]


class TestLRUStats:
    """Hit/miss accounting."""

    def test_hit_rate_and_utilization(self):
        cache = LRUCache(4, name="docs")
        cache.set("a", 1)
        cache.get("a")
        cache.get("a")
        cache.get("a")
        cache.get("zzz")

        stats = cache.get_stats()
        assert stats["name"] == "docs"
        assert stats["hits"] == 3
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 75.0
        assert stats["utilization"] == 25.0

    def test_empty_cache_hit_rate_is_zero(self):
        assert LRUCache(1).get_stats()["hit_rate"] == 0.0

    def test_get_stats_is_idempotent(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        cache.get("a")
        assert cache.get_stats() == cache.get_stats()

    def test_reset_stats(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")
        cache.reset_stats()
        stats = cache.get_stats()
        assert stats["hits"] == 0
        assert stats["misses"] == 0
        assert stats["size"] == 1
