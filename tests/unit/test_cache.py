"""Tests for the classification cache."""

import pytest

from resilio.cache import CacheConfig, CachedClassifier, ClassificationCache, CacheMetrics
from resilio.classification import ErrorClassifier, ErrorKind


@pytest.fixture
def cache(clock):
    """Small cache driven by the manual clock."""
    return ClassificationCache(CacheConfig(max_size=3, ttl_ms=60_000), clock=clock)


class TestCacheMetrics:
    """Tests for CacheMetrics."""

    def test_hit_rate_empty(self):
        """Hit rate is zero without requests."""
        assert CacheMetrics().hit_rate == 0.0

    def test_hit_rate(self):
        """Hit rate is hits over total requests."""
        metrics = CacheMetrics(hits=3, misses=1)
        assert metrics.hit_rate == 0.75
        assert metrics.to_dict()["total_requests"] == 4


class TestKeyDerivation:
    """Tests for cache signatures."""

    def test_key_format(self):
        """Keys join name, code, status and message."""
        key = ClassificationCache.key_for({"name": "AuthError", "code": "x", "status": 401, "message": "Bad"})
        assert key == "autherror:x:401:bad"

    def test_message_truncated(self):
        """Only the first 100 message characters participate."""
        base = "a" * 100
        assert ClassificationCache.key_for(base + "b") == ClassificationCache.key_for(base + "c")

    def test_logically_identical_errors_share_key(self):
        """Separate instances with the same shape share a key."""
        assert ClassificationCache.key_for(ValueError("boom")) == ClassificationCache.key_for(
            ValueError("boom")
        )

    def test_different_status_differs(self):
        """Status participates in the key."""
        assert ClassificationCache.key_for({"status": 500}) != ClassificationCache.key_for({"status": 503})


class TestClassificationCache:
    """Tests for get/put semantics."""

    def test_put_then_get(self, cache):
        """A stored kind is returned within the TTL."""
        cache.put("network down", ErrorKind.NETWORK)
        assert cache.get("network down") == ErrorKind.NETWORK

    def test_miss(self, cache):
        """Unknown errors are absent."""
        assert cache.get("never seen") is None
        assert cache.metrics.misses == 1

    def test_expired_entry_absent(self, cache, clock):
        """Entries past the TTL are absent without capacity pressure."""
        cache.put("network down", ErrorKind.NETWORK)
        clock.advance(60_000)

        assert cache.get("network down") is None
        assert len(cache) == 0
        assert cache.metrics.expirations == 1

    def test_entry_valid_just_before_ttl(self, cache, clock):
        """Entries are served until the TTL elapses."""
        cache.put("network down", ErrorKind.NETWORK)
        clock.advance(59_999)
        assert cache.get("network down") == ErrorKind.NETWORK

    def test_overflow_evicts_oldest(self, cache):
        """The oldest entry makes room for a new one."""
        cache.put("one", ErrorKind.NETWORK)
        cache.put("two", ErrorKind.NOT_FOUND)
        cache.put("three", ErrorKind.WEAK_INPUT)
        cache.put("four", ErrorKind.RATE_LIMITED)

        assert len(cache) == 3
        assert cache.get("one") is None
        assert cache.get("four") == ErrorKind.RATE_LIMITED
        assert cache.metrics.evictions == 1

    def test_reinsert_refreshes_position(self, cache):
        """Re-putting a key moves it to the young end."""
        cache.put("one", ErrorKind.NETWORK)
        cache.put("two", ErrorKind.NOT_FOUND)
        cache.put("three", ErrorKind.WEAK_INPUT)
        cache.put("one", ErrorKind.NETWORK)
        cache.put("four", ErrorKind.RATE_LIMITED)

        assert cache.get("one") == ErrorKind.NETWORK
        assert cache.get("two") is None

    def test_purge_expired(self, cache, clock):
        """purge_expired removes only stale entries."""
        cache.put("old", ErrorKind.NETWORK)
        clock.advance(30_000)
        cache.put("new", ErrorKind.NETWORK)
        clock.advance(30_000)

        assert cache.purge_expired() == 1
        assert cache.get("new") == ErrorKind.NETWORK

    def test_stats(self, cache):
        """Stats expose hits, misses and size."""
        cache.put("x", ErrorKind.UNKNOWN)
        cache.get("x")
        cache.get("y")

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["size"] == 1
        assert stats["max_size"] == 3

    def test_clear(self, cache):
        """clear empties the cache."""
        cache.put("x", ErrorKind.UNKNOWN)
        cache.clear()
        assert len(cache) == 0


class TestCachedClassifier:
    """Tests for the cache-backed classifier."""

    def test_second_lookup_hits_cache(self, clock):
        """Repeated errors are served from the cache."""
        cached = CachedClassifier(ErrorClassifier(), ClassificationCache(clock=clock))

        assert cached.classify({"status": 503}) == ErrorKind.SERVICE_UNAVAILABLE
        assert cached.classify({"status": 503}) == ErrorKind.SERVICE_UNAVAILABLE
        assert cached.cache.metrics.hits == 1
        assert cached.cache.metrics.misses == 1
