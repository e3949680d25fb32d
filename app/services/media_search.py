"""Fan a title search out to every configured media service."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import httpx

from ..models import MediaType, NormalizedResult, SeasonInfo, ServiceConfiguration, ServiceType
from . import normalizer
from .arr_clients import (
    DEFAULT_HTTP_TIMEOUT,
    BaseServiceClient,
    OverseerrClient,
    SonarrClient,
    build_client,
)
from .cache import CacheStats, SearchCache

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_TIMEOUT = 8.0

# Broker last: on duplicate keys the catalog managers' records win.
_SEARCH_PLAN: dict[str, tuple[ServiceType, ...]] = {
    "both": ("radarr", "sonarr", "overseerr"),
    "movie": ("radarr", "overseerr"),
    "series": ("sonarr", "overseerr"),
}

_SUBMIT_PREFERENCE: dict[str, tuple[ServiceType, ...]] = {
    "movie": ("radarr", "overseerr"),
    "series": ("sonarr", "overseerr"),
    "both": ("overseerr", "radarr", "sonarr"),
}


class ServiceConfigProvider(Protocol):
    async def list_enabled(
        self, service_type: ServiceType | None = None
    ) -> list[ServiceConfiguration]: ...


ClientFactory = Callable[..., BaseServiceClient]


@dataclass(slots=True)
class SearchOutcome:
    results: list[NormalizedResult]
    services_tried: list[ServiceType] = field(default_factory=list)
    services_failed: list[ServiceType] = field(default_factory=list)
    from_cache: bool = False
    elapsed: float = 0.0


@dataclass(slots=True)
class ServiceChoice:
    service_type: ServiceType
    service_config_id: int | None
    config: ServiceConfiguration


class MediaSearchService:
    """Aggregate Radarr, Sonarr and Overseerr lookups behind one call."""

    def __init__(
        self,
        configs: ServiceConfigProvider,
        cache: SearchCache,
        http_client: httpx.AsyncClient,
        *,
        search_timeout: float = DEFAULT_SEARCH_TIMEOUT,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        default_max_results: int = 5,
        client_factory: ClientFactory = build_client,
    ) -> None:
        self._configs = configs
        self._cache = cache
        self._http = http_client
        self._search_timeout = search_timeout
        self._http_timeout = http_timeout
        self._default_max_results = default_max_results
        self._client_factory = client_factory

    @property
    def cache(self) -> SearchCache:
        return self._cache

    def client_for(self, config: ServiceConfiguration) -> BaseServiceClient:
        return self._client_factory(config, self._http, timeout=self._http_timeout)

    async def search(
        self, media_type: MediaType, query: str, search_both: bool = True
    ) -> SearchOutcome:
        """Search every relevant service in parallel and merge the results."""

        started = time.perf_counter()
        cached = self._from_cache(media_type, query, search_both)
        if cached is not None:
            logger.info("Serving %s cached results for %r", len(cached), query)
            return SearchOutcome(
                results=cached,
                from_cache=True,
                elapsed=time.perf_counter() - started,
            )

        plan_key = "both" if search_both or media_type == "both" else media_type
        effective_type: MediaType = "both" if search_both else media_type

        enabled = await self._configs.list_enabled()
        max_results = max(
            (config.max_results for config in enabled),
            default=self._default_max_results,
        )
        chosen: dict[ServiceType, ServiceConfiguration] = {}
        for config in enabled:
            chosen.setdefault(config.service_type, config)

        kinds = [kind for kind in _SEARCH_PLAN[plan_key] if kind in chosen]
        skipped = [kind for kind in _SEARCH_PLAN[plan_key] if kind not in chosen]
        if skipped:
            logger.debug("No enabled configuration for %s", ", ".join(skipped))

        outputs = await asyncio.gather(
            *(
                self._search_service(chosen[kind], query, effective_type)
                for kind in kinds
            ),
            return_exceptions=True,
        )

        raw: dict[ServiceType, list[dict[str, Any]]] = {}
        failed: list[ServiceType] = []
        for kind, output in zip(kinds, outputs):
            if isinstance(output, BaseException):
                failed.append(kind)
                if isinstance(output, asyncio.TimeoutError):
                    logger.warning(
                        "%s search for %r timed out after %.1fs",
                        kind,
                        query,
                        self._search_timeout,
                    )
                else:
                    logger.warning("%s search for %r failed: %r", kind, query, output)
                continue
            raw[kind] = output

        results = normalizer.combine_and_process(
            raw.get("radarr", []),
            raw.get("sonarr", []),
            raw.get("overseerr", []),
            max_results,
        )
        if results:
            self._cache.set(media_type, query, results)

        elapsed = time.perf_counter() - started
        logger.info(
            "Search for %r (%s) returned %s results from %s in %.2fs (failed: %s)",
            query,
            media_type,
            len(results),
            kinds or "no services",
            elapsed,
            failed or "none",
        )
        return SearchOutcome(
            results=results,
            services_tried=kinds,
            services_failed=failed,
            from_cache=False,
            elapsed=elapsed,
        )

    def _from_cache(
        self, media_type: MediaType, query: str, search_both: bool
    ) -> list[NormalizedResult] | None:
        if not search_both:
            return self._cache.get(media_type, query)
        # Only a hit on both per-kind halves counts for a combined search.
        movies = self._cache.get("movie", query)
        series = self._cache.get("series", query)
        if movies is not None and series is not None:
            return movies + series
        return None

    async def _search_service(
        self, config: ServiceConfiguration, query: str, media_type: MediaType
    ) -> list[dict[str, Any]]:
        client = self.client_for(config)
        if isinstance(client, OverseerrClient):
            call = client.search(query, media_type)
        else:
            call = client.search(query)
        # wait_for cancels the in-flight request once the deadline passes.
        return await asyncio.wait_for(call, timeout=self._search_timeout)

    async def highest_priority_service(self, media_type: MediaType) -> ServiceChoice | None:
        """Pick the service a request of ``media_type`` should be submitted to."""

        for service_type in _SUBMIT_PREFERENCE[media_type]:
            configs = await self._configs.list_enabled(service_type)
            if configs:
                config = configs[0]
                return ServiceChoice(
                    service_type=service_type,
                    service_config_id=config.id,
                    config=config,
                )
        logger.warning("No enabled service can handle %s requests", media_type)
        return None

    async def fetch_seasons(self, result: NormalizedResult) -> list[SeasonInfo]:
        """Return the regular seasons of a series result."""

        seasons: list[SeasonInfo] = []
        if result.tvdb_id:
            sonarr = await self._configs.list_enabled("sonarr")
            if sonarr:
                client = self.client_for(sonarr[0])
                if isinstance(client, SonarrClient):
                    seasons = await self._bounded(client.lookup_seasons(result.tvdb_id), "sonarr")
        if not seasons and result.tmdb_id:
            overseerr = await self._configs.list_enabled("overseerr")
            if overseerr:
                client = self.client_for(overseerr[0])
                if isinstance(client, OverseerrClient):
                    seasons = await self._bounded(client.get_seasons(result.tmdb_id), "overseerr")
        if not seasons and result.season_count:
            seasons = [
                SeasonInfo(season_number=number)
                for number in range(1, result.season_count + 1)
            ]
        return seasons

    async def _bounded(self, call, service: str) -> list[SeasonInfo]:
        try:
            return await asyncio.wait_for(call, timeout=self._search_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s season lookup timed out", service)
            return []

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()
