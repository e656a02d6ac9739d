from noteboard.utils.cache import MISS, TtlCache

from conftest import ManualClock


def test_value_is_served_until_ttl_elapses():
    clock = ManualClock()
    cache = TtlCache(clock=clock)
    cache.set("notes_count", 7, ttl=60)

    clock.advance(59.9)
    assert cache.get("notes_count") == 7
    assert cache.has("notes_count")

    clock.advance(0.1)
    assert cache.get("notes_count") is MISS
    assert not cache.has("notes_count")


def test_expired_entry_is_dropped_on_access():
    clock = ManualClock()
    cache = TtlCache(clock=clock)
    cache.set("notes_page_0_20", ["a"], ttl=1)
    assert len(cache) == 1

    clock.advance(5)
    assert len(cache) == 1
    assert not cache.has("notes_page_0_20")
    assert len(cache) == 0


def test_falsy_values_are_hits():
    cache = TtlCache(clock=ManualClock())
    cache.set("notes_count", 0, ttl=10)
    assert cache.get("notes_count") == 0
    assert cache.get("other", default=None) is None


def test_remove():
    cache = TtlCache(clock=ManualClock())
    cache.set("a", 1, ttl=10)
    cache.set("b", 2, ttl=10)
    cache.remove("a")
    cache.remove("missing")
    assert cache.get("a") is MISS
    assert cache.get("b") == 2
    assert len(cache) == 1
