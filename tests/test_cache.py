from datetime import timedelta

from app.services.cache import TTLCache


def test_get_returns_value_within_ttl(clock):
    cache = TTLCache(timedelta(minutes=5), clock=clock)
    cache.set("k", "v")
    clock.advance(minutes=4, seconds=59)
    assert cache.get("k") == "v"


def test_entry_expires_at_ttl_and_is_dropped(clock):
    cache = TTLCache(timedelta(minutes=5), clock=clock)
    cache.set("k", "v")
    clock.advance(minutes=5)
    assert cache.get("k") is None
    assert len(cache) == 0


def test_get_entry_reports_stored_at(clock):
    cache = TTLCache(timedelta(hours=1), clock=clock)
    stored_at = cache.set("k", 1)
    clock.advance(minutes=10)
    value, ts = cache.get_entry("k")
    assert value == 1
    assert ts == stored_at


def test_last_writer_wins(clock):
    cache = TTLCache(timedelta(hours=1), clock=clock)
    cache.set("k", "first")
    cache.set("k", "second")
    assert cache.get("k") == "second"


def test_evict_expired_counts_removed_entries(clock):
    cache = TTLCache(timedelta(minutes=5), clock=clock)
    cache.set("old-1", 1)
    cache.set("old-2", 2)
    clock.advance(minutes=6)
    cache.set("fresh", 3)
    assert cache.evict_expired() == 2
    assert "fresh" in cache
    assert len(cache) == 1


def test_size_bound_prunes_only_expired_entries(clock):
    cache = TTLCache(timedelta(minutes=5), clock=clock, max_entries=3)
    for i in range(3):
        cache.set(i, i)
    clock.advance(minutes=6)
    cache.set("new", "x")
    assert len(cache) == 1

    # nothing is expired, so exceeding the bound keeps every entry
    for i in range(4):
        cache.set(f"live-{i}", i)
    assert len(cache) == 5


def test_clear(clock):
    cache = TTLCache(timedelta(minutes=5), clock=clock)
    cache.set("k", "v")
    cache.clear()
    assert cache.get("k") is None
