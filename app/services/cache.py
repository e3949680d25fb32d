"""In-memory TTL cache for normalized search results."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Callable, Iterable

from ..models import NormalizedResult
from ..utils import normalize_query

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


@dataclass(slots=True)
class CacheEntry:
    results: tuple[NormalizedResult, ...]
    created_at: float
    expires_at: float


@dataclass(slots=True)
class CacheStats:
    hits: int
    misses: int
    entries: int
    hit_rate: float

    def as_dict(self) -> dict[str, float | int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "entries": self.entries,
            "hit_rate": self.hit_rate,
        }


class SearchCache:
    """Thread-safe cache keyed by ``media_type:normalized query``.

    Entries expire lazily on lookup and are also reclaimed by :meth:`sweep`,
    which :meth:`start_sweeper` runs periodically on the event loop.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        *,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sweeper: asyncio.Task[None] | None = None

    @staticmethod
    def make_key(media_type: str, query: str) -> str:
        return f"{media_type}:{normalize_query(query)}"

    def get(self, media_type: str, query: str) -> list[NormalizedResult] | None:
        key = self.make_key(media_type, query)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self._misses += 1
                logger.debug("Search cache entry %s expired", key)
                return None
            self._hits += 1
            return list(entry.results)

    def set(
        self,
        media_type: str,
        query: str,
        results: Iterable[NormalizedResult],
        ttl: float | None = None,
    ) -> None:
        key = self.make_key(media_type, query)
        lifetime = self._default_ttl if ttl is None else ttl
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(
                results=tuple(results), created_at=now, expires_at=now + lifetime
            )
        logger.debug("Cached search results under %s for %.0fs", key, lifetime)

    def has(self, media_type: str, query: str) -> bool:
        """Return whether a live entry exists without touching the counters."""

        key = self.make_key(media_type, query)
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.expires_at > self._clock()

    def invalidate(self, media_type: str, query: str) -> bool:
        key = self.make_key(media_type, query)
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._hits = 0
            self._misses = 0
        logger.info("Search cache cleared (%s entries)", count)

    def sweep(self) -> int:
        """Evict every expired entry and return how many were removed."""

        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Search cache sweep removed %s entries", len(expired))
        return len(expired)

    def time_remaining(self, media_type: str, query: str) -> float | None:
        key = self.make_key(media_type, query)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            remaining = entry.expires_at - self._clock()
        return remaining if remaining > 0 else None

    def extend(self, media_type: str, query: str, extra_seconds: float) -> bool:
        """Push back the expiry of a live entry."""

        key = self.make_key(media_type, query)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= self._clock():
                return False
            entry.expires_at += extra_seconds
            return True

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            hits = self._hits
            misses = self._misses
            entries = len(self._entries)
        total = hits + misses
        hit_rate = round(hits / total, 2) if total else 0.0
        return CacheStats(hits=hits, misses=misses, entries=entries, hit_rate=hit_rate)

    def start_sweeper(self) -> None:
        """Launch the periodic sweep on the running event loop."""

        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()
