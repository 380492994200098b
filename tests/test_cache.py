"""Tests for the full-text TTL cache."""

from __future__ import annotations

from digestcore.enrich.cache import FullTextCache


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestFullTextCache:
    def test_hit_before_expiry(self):
        clock = FakeClock()
        cache = FullTextCache(ttl_seconds=60, clock=clock)
        cache.set("https://a.com/x", "text")

        clock.now += 59.999
        assert cache.get("https://a.com/x") == "text"

    def test_entry_still_valid_at_exact_expiry(self):
        clock = FakeClock()
        cache = FullTextCache(ttl_seconds=60, clock=clock)
        cache.set("https://a.com/x", "text")

        clock.now += 60
        assert cache.get("https://a.com/x") == "text"

    def test_miss_after_expiry_and_entry_removed(self):
        clock = FakeClock()
        cache = FullTextCache(ttl_seconds=60, clock=clock)
        cache.set("https://a.com/x", "text")

        clock.now += 60.001
        assert cache.get("https://a.com/x") is None
        assert len(cache) == 0

    def test_set_refreshes_ttl(self):
        clock = FakeClock()
        cache = FullTextCache(ttl_seconds=60, clock=clock)
        cache.set("k", "old")
        clock.now += 50
        cache.set("k", "new")
        clock.now += 50
        assert cache.get("k") == "new"

    def test_default_ttl_is_six_hours(self):
        assert FullTextCache().ttl_seconds == 6 * 60 * 60

    def test_cleanup_drops_only_expired(self):
        clock = FakeClock()
        cache = FullTextCache(ttl_seconds=10, clock=clock)
        cache.set("old", "a")
        clock.now += 5
        cache.set("fresh", "b")
        clock.now += 6

        assert cache.cleanup() == 1
        assert cache.get("fresh") == "b"
        assert cache.get("old") is None

