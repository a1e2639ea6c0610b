# Unit tests for:
#   - BoundedCache LRU behaviour, hit/miss accounting, thread safety

from __future__ import annotations

import threading

import pytest

from utils.cache import BoundedCache


class TestBoundedCache:

    def test_put_and_get(self):
        cache = BoundedCache("t", max_size=2)
        cache.put("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache
        assert len(cache) == 1

    def test_evicts_least_recently_used(self):
        cache = BoundedCache("t", max_size=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)
        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_zero_size_disables_cache(self):
        cache = BoundedCache("t", max_size=0)
        cache.put("a", 1)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            BoundedCache("t", max_size=-1)

    def test_stats(self):
        cache = BoundedCache("quality", max_size=5)
        cache.put("a", 1)
        cache.get("a")
        cache.get("missing")
        assert cache.stats() == {
            "name": "quality",
            "size": 1,
            "max_size": 5,
            "hits": 1,
            "misses": 1,
        }

    def test_get_or_compute(self):
        cache = BoundedCache("t", max_size=5)
        calls = []

        def compute():
            calls.append(1)
            return "value"

        assert cache.get_or_compute("k", compute) == "value"
        assert cache.get_or_compute("k", compute) == "value"
        assert len(calls) == 1

    def test_clear_resets_counters(self):
        cache = BoundedCache("t", max_size=5)
        cache.put("a", 1)
        cache.get("a")
        cache.clear()
        stats = cache.stats()
        assert stats["size"] == 0
        assert stats["hits"] == 0

    def test_concurrent_puts_respect_cap(self):
        cache = BoundedCache("t", max_size=50)

        def worker(offset):
            for i in range(200):
                cache.put((offset, i), i)
                cache.get((offset, i - 1))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(cache) == 50
