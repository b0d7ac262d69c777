"""
Unit tests for the TTL cache behind typing indicators.
"""

import pytest

from courtside.client.ephemeral import EphemeralCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return EphemeralCache(ttl=5.0, clock=clock)


def test_entry_expires_at_deadline(cache, clock):
    cache.put("a", 1)

    clock.now = 4.9
    assert cache.get("a") == 1
    clock.now = 5.0
    assert cache.get("a") is None
    assert "a" not in cache


def test_put_renews_deadline(cache, clock):
    cache.put("a", 1)
    clock.now = 4.0
    cache.put("a", 2)
    clock.now = 8.0

    assert cache.get("a") == 2


def test_sweep_returns_expired_keys(cache, clock):
    cache.put("a", 1)
    cache.put("b", 2, ttl=10.0)

    clock.now = 6.0

    assert cache.sweep() == ["a"]
    assert cache.items() == [("b", 2)]
    assert len(cache) == 1


def test_pop_of_expired_entry(cache, clock):
    cache.put("a", 1)
    clock.now = 6.0

    assert cache.pop("a") is None
    assert cache.pop("missing") is None


def test_next_deadline(cache):
    assert cache.next_deadline() is None

    cache.put("a", 1)
    cache.put("b", 2, ttl=1.0)

    assert cache.next_deadline() == 1.0
    cache.clear()
    assert cache.next_deadline() is None
