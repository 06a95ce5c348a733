import pytest

from pacer.infrastructure.cache.caching_service import InMemoryResponseCache

from tests.fakes import FakeClock


@pytest.fixture
def cache(clock: FakeClock):
    return InMemoryResponseCache(default_ttl=60, max_entries=3, clock=clock)


def test_put_then_get(cache: InMemoryResponseCache):
    cache.put("fp-1", {"items": [1, 2]})
    assert cache.get("fp-1") == {"items": [1, 2]}
    assert cache.get("missing") is None
    assert len(cache) == 1


def test_cached_none_is_a_hit(cache: InMemoryResponseCache, clock: FakeClock):
    cache.put("empty", None)
    assert cache.lookup("empty") == (True, None)
    assert cache.lookup("missing") == (False, None)
    clock.advance(60)
    assert cache.lookup("empty") == (False, None)


def test_entry_expires_exactly_at_ttl(cache: InMemoryResponseCache, clock: FakeClock):
    cache.put("fp-1", "payload")
    clock.advance(59.5)
    assert cache.get("fp-1") == "payload"
    clock.advance(0.5)
    assert cache.get("fp-1") is None
    assert len(cache) == 0


def test_per_entry_ttl(cache: InMemoryResponseCache, clock: FakeClock):
    cache.put("short", 1, ttl=5)
    cache.put("long", 2)
    clock.advance(10)
    assert cache.get("short") is None
    assert cache.get("long") == 2


def test_non_positive_ttl_is_not_stored(cache: InMemoryResponseCache):
    cache.put("fp-1", "payload", ttl=0)
    assert cache.get("fp-1") is None


def test_oldest_entry_is_evicted_beyond_bound(cache: InMemoryResponseCache, clock: FakeClock):
    for i in range(4):
        cache.put(f"fp-{i}", i)
        clock.advance(1)
    assert len(cache) == 3
    assert cache.get("fp-0") is None
    assert cache.get("fp-3") == 3


def test_rewrite_refreshes_position(cache: InMemoryResponseCache):
    cache.put("a", 1)
    cache.put("b", 2)
    cache.put("c", 3)
    cache.put("a", 10)
    cache.put("d", 4)
    assert cache.get("a") == 10
    assert cache.get("b") is None


def test_clear_and_delete(cache: InMemoryResponseCache):
    cache.put("a", 1)
    cache.put("b", 2)
    cache.delete("a")
    assert cache.get("a") is None
    cache.clear()
    assert len(cache) == 0
    assert cache.get("b") is None


def test_invalid_default_ttl():
    with pytest.raises(ValueError):
        InMemoryResponseCache(default_ttl=0)
