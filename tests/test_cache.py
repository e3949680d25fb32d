"""Search cache expiry and bookkeeping tests."""

from __future__ import annotations

import asyncio

import pytest

from app.models import NormalizedResult
from app.services.cache import SearchCache


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _results() -> list[NormalizedResult]:
    return [NormalizedResult(title="Inception", year=2010, tmdb_id=27205, media_type="movie")]


def test_keys_are_normalised() -> None:
    cache = SearchCache(clock=FakeClock())

    cache.set("movie", "  Inception ", _results())

    assert cache.get("movie", "INCEPTION") == _results()
    assert cache.keys() == ["movie:inception"]
    assert cache.get("series", "inception") is None


def test_entries_expire_lazily_after_ttl() -> None:
    clock = FakeClock()
    cache = SearchCache(300, clock=clock)
    cache.set("movie", "inception", _results())

    clock.advance(299)
    assert cache.get("movie", "inception") is not None
    clock.advance(1)
    assert cache.get("movie", "inception") is None
    assert cache.keys() == []


def test_sweep_removes_only_expired_entries() -> None:
    clock = FakeClock()
    cache = SearchCache(300, clock=clock)
    cache.set("movie", "old", _results())
    clock.advance(200)
    cache.set("movie", "new", _results())
    clock.advance(150)

    assert cache.sweep() == 1
    assert cache.keys() == ["movie:new"]


def test_stats_track_hits_and_misses() -> None:
    cache = SearchCache(clock=FakeClock())
    cache.set("movie", "inception", _results())

    cache.get("movie", "inception")
    cache.get("movie", "inception")
    cache.get("movie", "missing")
    assert cache.has("movie", "inception")

    stats = cache.stats()
    assert (stats.hits, stats.misses, stats.entries) == (2, 1, 1)
    assert stats.hit_rate == 0.67

    cache.clear()
    assert cache.stats().as_dict() == {"hits": 0, "misses": 0, "entries": 0, "hit_rate": 0.0}


def test_extend_and_time_remaining() -> None:
    clock = FakeClock()
    cache = SearchCache(300, clock=clock)
    cache.set("series", "dark", _results(), ttl=60)

    assert cache.time_remaining("series", "dark") == 60
    assert cache.extend("series", "dark", 30)
    clock.advance(80)
    assert cache.time_remaining("series", "dark") == 10
    clock.advance(10)
    assert not cache.extend("series", "dark", 30)
    assert cache.invalidate("series", "dark")
    assert not cache.invalidate("series", "dark")


@pytest.mark.anyio("asyncio")
async def test_background_sweeper_reclaims_entries() -> None:
    clock = FakeClock()
    cache = SearchCache(10, sweep_interval=0.01, clock=clock)
    cache.set("movie", "inception", _results())
    clock.advance(11)

    cache.start_sweeper()
    try:
        for _ in range(50):
            if not cache.keys():
                break
            await asyncio.sleep(0.01)
    finally:
        await cache.stop_sweeper()

    assert cache.keys() == []
