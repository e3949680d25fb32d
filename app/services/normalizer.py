"""Convert provider payloads into :class:`NormalizedResult` records."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Sequence

from pydantic import ValidationError

from ..models import NormalizedResult
from ..utils import parse_year

logger = logging.getLogger(__name__)

TMDB_POSTER_BASE = "https://image.tmdb.org/t/p/w500"

RawResult = dict[str, Any]


class MalformedResultError(ValueError):
    """Raised when a provider record lacks the fields we need."""


def _clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _poster_from_images(images: Any) -> str | None:
    if not isinstance(images, list):
        return None
    for image in images:
        if isinstance(image, dict) and image.get("coverType") == "poster":
            return _clean_text(image.get("remoteUrl")) or _clean_text(image.get("url"))
    return None


def _require_title(raw: RawResult, *keys: str) -> str:
    for key in keys:
        title = _clean_text(raw.get(key))
        if title:
            return title
    raise MalformedResultError("record has no title")


def normalize_radarr(raw: RawResult) -> NormalizedResult:
    return NormalizedResult(
        title=_require_title(raw, "title", "originalTitle"),
        year=parse_year(raw.get("year")),
        overview=_clean_text(raw.get("overview")),
        poster_path=_poster_from_images(raw.get("images")),
        tmdb_id=_positive_int(raw.get("tmdbId")),
        imdb_id=_clean_text(raw.get("imdbId")),
        media_type="movie",
        source="radarr",
    )


def normalize_sonarr(raw: RawResult) -> NormalizedResult:
    season_count = _positive_int(raw.get("seasonCount"))
    if season_count is None and isinstance(raw.get("seasons"), list):
        regular = [
            season
            for season in raw["seasons"]
            if isinstance(season, dict) and _positive_int(season.get("seasonNumber"))
        ]
        season_count = len(regular) or None
    return NormalizedResult(
        title=_require_title(raw, "title"),
        year=parse_year(raw.get("year")),
        overview=_clean_text(raw.get("overview")),
        poster_path=_poster_from_images(raw.get("images")),
        tvdb_id=_positive_int(raw.get("tvdbId")),
        imdb_id=_clean_text(raw.get("imdbId")),
        media_type="series",
        season_count=season_count,
        source="sonarr",
    )


def normalize_overseerr(raw: RawResult) -> NormalizedResult:
    media_type = raw.get("mediaType")
    if media_type not in {"movie", "tv"}:
        raise MalformedResultError(f"unsupported media type {media_type!r}")
    external_ids = raw.get("externalIds") if isinstance(raw.get("externalIds"), dict) else {}
    poster = _clean_text(raw.get("posterPath"))
    if poster and poster.startswith("/"):
        poster = f"{TMDB_POSTER_BASE}{poster}"
    return NormalizedResult(
        title=_require_title(raw, "title", "name"),
        year=parse_year(raw.get("releaseDate") or raw.get("firstAirDate")),
        overview=_clean_text(raw.get("overview")),
        poster_path=poster,
        tmdb_id=_positive_int(raw.get("id")),
        tvdb_id=_positive_int(external_ids.get("tvdbId")),
        imdb_id=_clean_text(external_ids.get("imdbId")),
        media_type="movie" if media_type == "movie" else "series",
        season_count=_positive_int(raw.get("numberOfSeasons")),
        source="overseerr",
    )


def normalize_many(
    records: Iterable[RawResult],
    normalizer: Callable[[RawResult], NormalizedResult],
    source: str,
) -> list[NormalizedResult]:
    """Normalize ``records`` dropping any that fail to map or are invalid."""

    normalized: list[NormalizedResult] = []
    dropped = 0
    for raw in records:
        try:
            result = normalizer(raw)
        except (MalformedResultError, ValidationError, AttributeError, TypeError) as exc:
            dropped += 1
            logger.warning("Dropping malformed %s result: %s", source, exc)
            continue
        if not result.is_valid():
            dropped += 1
            logger.warning("Dropping incomplete %s result %r", source, result.title)
            continue
        normalized.append(result)
    if dropped:
        logger.debug("%s normalization kept %s, dropped %s", source, len(normalized), dropped)
    return normalized


def dedupe(results: Iterable[NormalizedResult]) -> list[NormalizedResult]:
    """Remove duplicates, keeping the first occurrence of each key."""

    seen: set[str] = set()
    unique: list[NormalizedResult] = []
    for result in results:
        key = result.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique


def rank(results: Sequence[NormalizedResult]) -> list[NormalizedResult]:
    """Newest first; year-less results keep their relative order at the end."""

    return sorted(
        results,
        key=lambda result: (result.year is None, -(result.year or 0)),
    )


def process(
    results: Iterable[NormalizedResult], max_results: int = 5
) -> list[NormalizedResult]:
    ranked = rank(dedupe(results))
    return ranked[: max(max_results, 0)]


def combine_and_process(
    radarr: Iterable[RawResult] = (),
    sonarr: Iterable[RawResult] = (),
    overseerr: Iterable[RawResult] = (),
    max_results: int = 5,
) -> list[NormalizedResult]:
    """Normalize every provider's output and merge them.

    Order matters: on duplicate keys the catalog managers win over the
    broker because they are listed first.
    """

    combined = [
        *normalize_many(radarr, normalize_radarr, "radarr"),
        *normalize_many(sonarr, normalize_sonarr, "sonarr"),
        *normalize_many(overseerr, normalize_overseerr, "overseerr"),
    ]
    return process(combined, max_results)
