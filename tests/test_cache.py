"""Tests for the in-memory TTL cache."""

from __future__ import annotations

from src.services.cache import DEFAULT_MAX_ENTRIES, TTLCache


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── Core operations ──────────────────────────────────────────────────


class TestTTLCacheBasics:
    def test_put_and_get(self):
        cache = TTLCache(ttl_seconds=60)
        cache.put("settings:validation", {"confidence_threshold": 0.8})
        assert cache.get("settings:validation") == {"confidence_threshold": 0.8}

    def test_get_returns_none_for_missing_key(self):
        cache = TTLCache(ttl_seconds=60)
        assert cache.get("nonexistent") is None

    def test_put_overwrites_existing_key(self):
        cache = TTLCache(ttl_seconds=60)
        cache.put("key1", "old")
        cache.put("key1", "new")
        assert cache.get("key1") == "new"
        assert cache.entry_count == 1

    def test_invalidate_removes_key(self):
        cache = TTLCache(ttl_seconds=60)
        cache.put("key1", "value")
        assert cache.invalidate("key1") is True
        assert cache.get("key1") is None

    def test_invalidate_returns_false_for_missing_key(self):
        cache = TTLCache(ttl_seconds=60)
        assert cache.invalidate("nonexistent") is False

    def test_clear_removes_all_entries(self):
        cache = TTLCache(ttl_seconds=60)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.clear()
        assert cache.entry_count == 0

    def test_has_key(self):
        cache = TTLCache(ttl_seconds=60)
        cache.put("key1", "value")
        assert cache.has("key1") is True
        assert cache.has("key2") is False


# ── Freshness ───────────────────────────────────────────────────────


class TestFreshness:
    def test_entry_served_within_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=60, clock=clock)
        cache.put("k", "v")
        clock.advance(59.9)
        assert cache.get("k") == "v"

    def test_entry_expires_at_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=60, clock=clock)
        cache.put("k", "v")
        clock.advance(60)
        assert cache.get("k") is None
        assert cache.entry_count == 0

    def test_age_reports_seconds_since_put(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=60, clock=clock)
        cache.put("k", "v")
        clock.advance(12.5)
        assert cache.age("k") == 12.5
        assert cache.age("missing") is None

    def test_put_resets_age(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=60, clock=clock)
        cache.put("k", "old")
        clock.advance(50)
        cache.put("k", "new")
        clock.advance(50)
        assert cache.get("k") == "new"


# ── LRU eviction ────────────────────────────────────────────────────


class TestLRUEviction:
    def test_evicts_lru_when_full(self):
        cache = TTLCache(ttl_seconds=60, max_entries=2)
        cache.put("first", 1)
        cache.put("second", 2)
        cache.put("third", 3)
        assert cache.get("first") is None
        assert cache.get("third") == 3

    def test_access_promotes_to_mru(self):
        cache = TTLCache(ttl_seconds=60, max_entries=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)
        assert cache.get("a") == 1
        assert cache.get("b") is None

    def test_default_max_entries(self):
        cache = TTLCache(ttl_seconds=60)
        assert cache._max_entries == DEFAULT_MAX_ENTRIES


# ── Prefix invalidation ────────────────────────────────────────────


class TestPrefixInvalidation:
    def test_invalidates_matching_prefix(self):
        cache = TTLCache(ttl_seconds=60)
        cache.put("settings:validation", {"a": 1})
        cache.put("settings:conflict", {"b": 2})
        cache.put("other:key", "x")

        removed = cache.invalidate_prefix("settings:")
        assert removed == 2
        assert cache.get("settings:validation") is None
        assert cache.get("settings:conflict") is None
        assert cache.get("other:key") == "x"

    def test_returns_zero_when_no_match(self):
        cache = TTLCache(ttl_seconds=60)
        cache.put("foo", "bar")
        assert cache.invalidate_prefix("zzz") == 0
