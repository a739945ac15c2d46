"""Tests for the LRU cache."""

import time

from beacon_core.cache.lru import LRUCache


class TestLRUCache:
    def test_set_get(self):
        cache = LRUCache(max_size=10)
        cache.set("a", 1)

        assert cache.get("a") == 1
        assert cache.get("missing") is None

    def test_evicts_least_recently_used(self):
        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")  # a is now most recent
        cache.set("c", 3)

        assert "b" not in cache
        assert cache.get("a") == 1
        assert cache.get("c") == 3
        assert cache.stats["evictions"] == 1

    def test_keys_order(self):
        cache = LRUCache(max_size=3)
        for key in ("a", "b", "c"):
            cache.set(key, key)
        cache.get("a")

        assert cache.keys() == ["b", "c", "a"]

    def test_ttl_expiry(self):
        cache = LRUCache(max_size=10, default_ttl_seconds=0.01)
        cache.set("a", 1)
        time.sleep(0.02)

        assert cache.get("a") is None
        assert cache.size == 0

    def test_zero_size_disables(self):
        cache = LRUCache(max_size=0)
        cache.set("a", 1)

        assert cache.get("a") is None

    def test_stats(self):
        cache = LRUCache(max_size=10)
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")

        stats = cache.stats
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate_percent"] == 50.0

    def test_delete_and_clear(self):
        cache = LRUCache()
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert cache.size == 0
