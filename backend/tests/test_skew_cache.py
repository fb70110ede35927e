"""
Unit Tests for the Skew Result Cache
====================================

Tests:
1. set/get round trip with symbol normalization
2. TTL expiry against an injected clock
3. Sweep of expired entries
"""

from services.skew_cache import SkewCache


class TestSkewCache:

    def test_round_trip(self, fake_clock):
        cache = SkewCache(default_ttl_seconds=3600, clock=fake_clock)
        cache.set("/ES", {"skew": 1.2})

        assert cache.get("/ES") == {"skew": 1.2}
        assert cache.get("es") == {"skew": 1.2}
        assert cache.has("ES")

    def test_expires_after_ttl(self, fake_clock):
        cache = SkewCache(default_ttl_seconds=3600, clock=fake_clock)
        cache.set("SPY", "value")

        fake_clock.advance(3599)
        assert cache.get("SPY") == "value"

        fake_clock.advance(1)
        assert cache.get("SPY") is None
        assert cache.size() == 0

    def test_overwrite_resets_expiry(self, fake_clock):
        cache = SkewCache(default_ttl_seconds=100, clock=fake_clock)
        cache.set("SPY", "old")
        fake_clock.advance(90)
        cache.set("SPY", "new")
        fake_clock.advance(50)

        assert cache.get("SPY") == "new"

    def test_per_entry_ttl(self, fake_clock):
        cache = SkewCache(default_ttl_seconds=3600, clock=fake_clock)
        cache.set("SPY", "short", ttl_seconds=10)
        fake_clock.advance(10)
        assert cache.get("SPY") is None

    def test_delete_and_clear(self, fake_clock):
        cache = SkewCache(clock=fake_clock)
        cache.set("SPY", 1)
        cache.set("QQQ", 2)

        assert cache.delete("spy") is True
        assert cache.delete("spy") is False
        cache.clear()
        assert cache.size() == 0

    def test_cleanup_removes_only_expired(self, fake_clock):
        cache = SkewCache(default_ttl_seconds=3600, clock=fake_clock)
        cache.set("OLD", 1, ttl_seconds=60)
        cache.set("NEW", 2)
        fake_clock.advance(61)

        assert cache.cleanup() == 1
        assert cache.stats()["keys"] == ["NEW"]
        assert cache.cleanup() == 0
