"""HTTP clients for Radarr, Sonarr and Overseerr."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Iterable

import httpx

from ..models import MediaType, SeasonInfo, ServiceConfiguration, ServiceType

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 9.0


class ServiceRequestError(RuntimeError):
    """Raised when a write call to a media service fails."""

    def __init__(
        self, service: str, message: str, *, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.service = service
        self.status_code = status_code


@dataclass(slots=True)
class ConnectionTestResult:
    success: bool
    message: str
    version: str | None = None


@dataclass(slots=True)
class BrokerServer:
    """A Radarr/Sonarr server as configured inside Overseerr."""

    id: int
    name: str
    service_type: ServiceType
    is_default: bool
    profile_id: int | None = None
    root_folder: str | None = None


class BaseServiceClient:
    """Shared request plumbing for the *arr family of APIs.

    Every lookup swallows transport and decoding errors and returns an empty
    list so that a single broken service never aborts an aggregate search.
    Writes raise :class:`ServiceRequestError` instead.
    """

    service_type: ClassVar[ServiceType]
    display_name: ClassVar[str]
    _STATUS_PATH: ClassVar[str] = "/api/v3/system/status"

    def __init__(
        self,
        config: ServiceConfiguration,
        http_client: httpx.AsyncClient,
        *,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self._config = config
        self._client = http_client
        self._timeout = timeout

    @property
    def config(self) -> ServiceConfiguration:
        return self._config

    def _url(self, path: str) -> str:
        return f"{self._config.base_url.rstrip('/')}{path}"

    def _headers(self) -> dict[str, str]:
        return {
            "X-Api-Key": self._config.api_key,
            "Accept": "application/json",
        }

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        logger.debug("%s GET %s", self.display_name, path)
        response = await self._client.get(
            self._url(path),
            params=params,
            headers=self._headers(),
            timeout=self._timeout,
        )
        response.raise_for_status()
        return response.json()

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        logger.debug("%s POST %s", self.display_name, path)
        response = await self._client.post(
            self._url(path),
            json=payload,
            headers=self._headers(),
            timeout=self._timeout,
        )
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    async def _lookup(
        self, path: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        try:
            payload = await self._get(path, params)
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "%s lookup %s failed with status %s",
                self.display_name,
                path,
                exc.response.status_code,
            )
            return []
        except httpx.HTTPError as exc:
            logger.warning(
                "%s lookup %s failed: %s (%s)",
                self.display_name,
                path,
                exc,
                exc.__class__.__name__,
            )
            return []
        except ValueError as exc:
            logger.warning("%s returned invalid JSON for %s: %s", self.display_name, path, exc)
            return []
        if not isinstance(payload, list):
            logger.warning("%s returned an unexpected payload for %s", self.display_name, path)
            return []
        return [item for item in payload if isinstance(item, dict)]

    async def _write(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            data = await self._post(path, payload)
        except httpx.HTTPStatusError as exc:
            detail = self._error_detail(exc.response)
            raise ServiceRequestError(
                self.service_type,
                f"{self.display_name} rejected the request ({exc.response.status_code}): {detail}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ServiceRequestError(
                self.service_type,
                f"Could not reach {self.display_name}: {exc.__class__.__name__}",
            ) from exc
        except ValueError as exc:
            raise ServiceRequestError(
                self.service_type, f"{self.display_name} returned an invalid response"
            ) from exc
        return data if isinstance(data, dict) else {"data": data}

    async def _read_list(self, path: str) -> list[dict[str, Any]]:
        """GET a list that the caller needs, raising instead of returning []."""

        try:
            payload = await self._get(path)
        except httpx.HTTPError as exc:
            raise ServiceRequestError(
                self.service_type, f"Failed to read {path} from {self.display_name}: {exc}"
            ) from exc
        except ValueError as exc:
            raise ServiceRequestError(
                self.service_type, f"{self.display_name} returned an invalid response"
            ) from exc
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(body, list) and body and isinstance(body[0], dict):
            message = body[0].get("errorMessage") or body[0].get("message")
            if message:
                return str(message)
        if isinstance(body, dict):
            message = body.get("message") or body.get("error")
            if message:
                return str(message)
        return response.reason_phrase

    async def test_connection(self) -> ConnectionTestResult:
        """Check that the service is reachable with the configured API key."""

        try:
            status = await self._get(self._STATUS_PATH)
        except httpx.HTTPStatusError as exc:
            return ConnectionTestResult(
                success=False,
                message=f"{self.display_name} answered with status {exc.response.status_code}",
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("%s connection test failed: %s", self.display_name, exc)
            return ConnectionTestResult(
                success=False, message=f"Failed to connect to {self.display_name}"
            )
        version = status.get("version") if isinstance(status, dict) else None
        logger.info("%s connection test succeeded (version %s)", self.display_name, version)
        return ConnectionTestResult(
            success=True,
            message=f"Successfully connected to {self.display_name}",
            version=str(version) if version else None,
        )


class _ArrCatalogClient(BaseServiceClient):
    async def get_quality_profiles(self) -> list[dict[str, Any]]:
        profiles = await self._read_list("/api/v3/qualityprofile")
        return [{"id": item.get("id"), "name": item.get("name")} for item in profiles]

    async def get_root_folders(self) -> list[dict[str, Any]]:
        folders = await self._read_list("/api/v3/rootfolder")
        return [
            {
                "id": item.get("id"),
                "path": item.get("path"),
                "free_space": item.get("freeSpace"),
            }
            for item in folders
        ]


class RadarrClient(_ArrCatalogClient):
    service_type = "radarr"
    display_name = "Radarr"

    async def search(self, query: str) -> list[dict[str, Any]]:
        results = await self._lookup("/api/v3/movie/lookup", {"term": query})
        logger.debug("Radarr returned %s results for %r", len(results), query)
        return results

    async def add_movie(
        self,
        *,
        title: str,
        year: int | None,
        tmdb_id: int,
        title_slug: str,
        quality_profile_id: int,
        root_folder_path: str,
        images: Iterable[dict[str, Any]] | None = None,
        monitored: bool = True,
        search_for_movie: bool = True,
    ) -> dict[str, Any]:
        payload = {
            "title": title,
            "year": year or 0,
            "tmdbId": tmdb_id,
            "titleSlug": title_slug,
            "qualityProfileId": quality_profile_id,
            "rootFolderPath": root_folder_path,
            "images": list(images or []),
            "monitored": monitored,
            "addOptions": {"searchForMovie": search_for_movie},
        }
        data = await self._write("/api/v3/movie", payload)
        logger.info("Movie %s (tmdb %s) added to Radarr", title, tmdb_id)
        return data


class SonarrClient(_ArrCatalogClient):
    service_type = "sonarr"
    display_name = "Sonarr"

    async def search(self, query: str) -> list[dict[str, Any]]:
        results = await self._lookup("/api/v3/series/lookup", {"term": query})
        logger.debug("Sonarr returned %s results for %r", len(results), query)
        return results

    async def lookup_seasons(self, tvdb_id: int) -> list[SeasonInfo]:
        """Return the regular seasons Sonarr knows for ``tvdb_id``."""

        matches = await self._lookup("/api/v3/series/lookup", {"term": f"tvdb:{tvdb_id}"})
        series = next(
            (item for item in matches if item.get("tvdbId") == tvdb_id),
            matches[0] if matches else None,
        )
        if series is None:
            return []
        seasons: list[SeasonInfo] = []
        for season in series.get("seasons") or []:
            if not isinstance(season, dict):
                continue
            number = season.get("seasonNumber")
            if not isinstance(number, int) or number <= 0:
                continue
            statistics = season.get("statistics") or {}
            episode_count = statistics.get("totalEpisodeCount") if isinstance(statistics, dict) else None
            seasons.append(SeasonInfo(season_number=number, episode_count=episode_count))
        return sorted(seasons, key=lambda item: item.season_number)

    async def add_series(
        self,
        *,
        title: str,
        year: int | None,
        tvdb_id: int,
        title_slug: str,
        quality_profile_id: int,
        root_folder_path: str,
        seasons: Iterable[dict[str, Any]] | None = None,
        images: Iterable[dict[str, Any]] | None = None,
        monitored: bool = True,
        search_for_missing_episodes: bool = True,
    ) -> dict[str, Any]:
        payload = {
            "title": title,
            "year": year or 0,
            "tvdbId": tvdb_id,
            "titleSlug": title_slug,
            "qualityProfileId": quality_profile_id,
            "rootFolderPath": root_folder_path,
            "images": list(images or []),
            "seasons": list(seasons or []),
            "monitored": monitored,
            "seasonFolder": True,
            "addOptions": {"searchForMissingEpisodes": search_for_missing_episodes},
        }
        data = await self._write("/api/v3/series", payload)
        logger.info("Series %s (tvdb %s) added to Sonarr", title, tvdb_id)
        return data


class OverseerrClient(BaseServiceClient):
    service_type = "overseerr"
    display_name = "Overseerr"
    _STATUS_PATH = "/api/v1/status"
    _MEDIA_FILTERS: ClassVar[dict[str, set[str]]] = {
        "movie": {"movie"},
        "series": {"tv"},
        "both": {"movie", "tv"},
    }

    async def search(
        self, query: str, media_type: MediaType = "both"
    ) -> list[dict[str, Any]]:
        """Search Overseerr and keep only results of ``media_type``."""

        if len(query.strip()) < 2:
            logger.debug("Skipping Overseerr search for short query %r", query)
            return []
        # Overseerr answers /search with an object wrapping the result list.
        try:
            payload = await self._get("/api/v1/search", {"query": query, "page": 1})
        except httpx.HTTPError as exc:
            logger.warning("Overseerr search for %r failed: %s", query, exc)
            return []
        except ValueError as exc:
            logger.warning("Overseerr returned invalid JSON for %r: %s", query, exc)
            return []
        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            return []
        allowed = self._MEDIA_FILTERS.get(media_type, self._MEDIA_FILTERS["both"])
        filtered = [
            item
            for item in results
            if isinstance(item, dict) and item.get("mediaType") in allowed
        ]
        logger.debug(
            "Overseerr returned %s of %s results for %r (%s)",
            len(filtered),
            len(results),
            query,
            media_type,
        )
        return filtered

    async def get_seasons(self, tmdb_id: int) -> list[SeasonInfo]:
        try:
            payload = await self._get(f"/api/v1/tv/{tmdb_id}")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Overseerr season lookup for tmdb %s failed: %s", tmdb_id, exc)
            return []
        if not isinstance(payload, dict):
            return []
        seasons: list[SeasonInfo] = []
        for season in payload.get("seasons") or []:
            if not isinstance(season, dict):
                continue
            number = season.get("seasonNumber")
            if not isinstance(number, int) or number <= 0:
                continue
            seasons.append(
                SeasonInfo(
                    season_number=number,
                    name=season.get("name"),
                    episode_count=season.get("episodeCount"),
                )
            )
        return sorted(seasons, key=lambda item: item.season_number)

    async def request_movie(
        self,
        *,
        media_id: int,
        server_id: int,
        profile_id: int | None,
        root_folder: str | None,
        is_4k: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "mediaType": "movie",
            "mediaId": media_id,
            "is4k": is_4k,
            "serverId": server_id,
        }
        if profile_id is not None:
            payload["profileId"] = profile_id
        if root_folder:
            payload["rootFolder"] = root_folder
        data = await self._write("/api/v1/request", payload)
        logger.info("Movie tmdb %s requested via Overseerr", media_id)
        return data

    async def request_series(
        self,
        *,
        media_id: int,
        server_id: int,
        profile_id: int | None,
        root_folder: str | None,
        seasons: list[int] | str = "all",
        is_4k: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "mediaType": "tv",
            "mediaId": media_id,
            "seasons": seasons,
            "is4k": is_4k,
            "serverId": server_id,
        }
        if profile_id is not None:
            payload["profileId"] = profile_id
        if root_folder:
            payload["rootFolder"] = root_folder
        data = await self._write("/api/v1/request", payload)
        logger.info("Series tmdb %s requested via Overseerr", media_id)
        return data

    async def get_radarr_servers(self) -> list[BrokerServer]:
        return self._servers(await self._read_list("/api/v1/settings/radarr"), "radarr")

    async def get_sonarr_servers(self) -> list[BrokerServer]:
        return self._servers(await self._read_list("/api/v1/settings/sonarr"), "sonarr")

    @staticmethod
    def _servers(items: list[dict[str, Any]], service_type: ServiceType) -> list[BrokerServer]:
        servers: list[BrokerServer] = []
        for item in items:
            server_id = item.get("id")
            if not isinstance(server_id, int):
                continue
            servers.append(
                BrokerServer(
                    id=server_id,
                    name=str(item.get("name") or f"{service_type} {server_id}"),
                    service_type=service_type,
                    is_default=bool(item.get("isDefault")),
                    profile_id=item.get("activeProfileId"),
                    root_folder=item.get("activeDirectory"),
                )
            )
        return servers


_CLIENT_TYPES: dict[str, type[BaseServiceClient]] = {
    "radarr": RadarrClient,
    "sonarr": SonarrClient,
    "overseerr": OverseerrClient,
}


def build_client(
    config: ServiceConfiguration,
    http_client: httpx.AsyncClient,
    *,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> BaseServiceClient:
    """Instantiate the client matching ``config.service_type``."""

    try:
        client_type = _CLIENT_TYPES[config.service_type]
    except KeyError as exc:
        raise ValueError(f"Unsupported service type: {config.service_type}") from exc
    return client_type(config, http_client, timeout=timeout)
