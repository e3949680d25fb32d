"""Pydantic models describing search results, sessions and requests."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MediaType = Literal["movie", "series", "both"]
ServiceType = Literal["radarr", "sonarr", "overseerr"]

SERVICE_TYPES: tuple[ServiceType, ...] = ("radarr", "sonarr", "overseerr")


class ConversationState(str, Enum):
    IDLE = "IDLE"
    SEARCHING = "SEARCHING"
    AWAITING_SELECTION = "AWAITING_SELECTION"
    AWAITING_SEASON_SELECTION = "AWAITING_SEASON_SELECTION"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    PROCESSING = "PROCESSING"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


class NormalizedResult(BaseModel):
    """Provider-agnostic search hit."""

    title: str
    year: int | None = None
    overview: str | None = None
    poster_path: str | None = None
    tmdb_id: int | None = None
    tvdb_id: int | None = None
    imdb_id: str | None = None
    media_type: MediaType
    season_count: int | None = None
    source: ServiceType | None = None

    def is_valid(self) -> bool:
        """A hit needs a title and either an external id or a year."""

        if not (self.title or "").strip():
            return False
        if self.tmdb_id is None and self.tvdb_id is None and self.year is None:
            return False
        return True

    def dedup_key(self) -> str:
        if self.media_type == "movie" and self.tmdb_id:
            return f"movie:tmdb:{self.tmdb_id}"
        if self.media_type == "series" and self.tvdb_id:
            return f"series:tvdb:{self.tvdb_id}"
        normalized_title = self.title.strip().lower()
        return f"{self.media_type}:title:{normalized_title}:{self.year or 'unknown'}"

    @property
    def emoji(self) -> str:
        return "🎬" if self.media_type == "movie" else "📺"

    def display_title(self) -> str:
        """Return ``Title (Year)`` for chat messages."""

        if self.year:
            return f"{self.title} ({self.year})"
        return self.title

    def to_list_entry(self, position: int, overview_limit: int = 300) -> str:
        """Format the result as one numbered entry of a results list."""

        season_info = ""
        if self.season_count:
            plural = "s" if self.season_count > 1 else ""
            season_info = f" - {self.season_count} season{plural}"
        overview = (self.overview or "No description available").strip()
        if len(overview) > overview_limit:
            overview = overview[:overview_limit] + "..."
        return f"{position}. {self.emoji} {self.display_title()}{season_info}\n   {overview}"


class SeasonInfo(BaseModel):
    season_number: int
    name: str | None = None
    episode_count: int | None = None

    def label(self) -> str:
        name = self.name or f"Season {self.season_number}"
        if self.episode_count:
            return f"{self.season_number}. {name} ({self.episode_count} episodes)"
        return f"{self.season_number}. {name}"


class ConversationSession(BaseModel):
    """One requester's in-flight conversation."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    requester_id: str
    requester_address: str | None = None
    contact_name: str | None = None
    state: ConversationState = ConversationState.IDLE
    media_type: MediaType | None = None
    search_query: str | None = None
    search_results: list[NormalizedResult] | None = None
    selected_result_index: int | None = None
    selected_result: NormalizedResult | None = None
    available_seasons: list[SeasonInfo] | None = None
    selected_seasons: list[int] | None = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def clear_selection(self) -> None:
        """Drop every piece of pending search and selection state."""

        self.media_type = None
        self.search_query = None
        self.search_results = None
        self.selected_result_index = None
        self.selected_result = None
        self.available_seasons = None
        self.selected_seasons = None

    def select(self, index: int) -> NormalizedResult:
        """Store the result at ``index`` as the user's selection."""

        results = self.search_results
        if results is None or not 0 <= index < len(results):
            raise IndexError(f"Selection {index} is out of range")
        self.selected_result_index = index
        self.selected_result = results[index]
        self.available_seasons = None
        self.selected_seasons = None
        return self.selected_result


class ServiceConfiguration(BaseModel):
    """Operator-supplied settings for one media service."""

    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    name: str = Field(min_length=1, max_length=120)
    service_type: ServiceType
    base_url: str = Field(min_length=1)
    api_key: str = Field(min_length=1)
    enabled: bool = True
    priority: int = Field(default=1, ge=1, le=5)
    max_results: int = Field(default=5, ge=1, le=20)
    quality_profile_id: int | None = None
    root_folder_path: str | None = None

    def public_view(self) -> dict[str, object]:
        """Return the configuration without its credential."""

        return self.model_dump(mode="json", exclude={"api_key"})


class MediaRequest(BaseModel):
    """Durable record of a requested title."""

    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    requester_id: str
    requester_address: str | None = None
    contact_name: str | None = None
    media_type: Literal["movie", "series"]
    title: str
    year: int | None = None
    tmdb_id: int | None = None
    tvdb_id: int | None = None
    imdb_id: str | None = None
    selected_seasons: list[int] | None = None
    service_type: ServiceType | None = None
    service_config_id: int | None = None
    status: RequestStatus = RequestStatus.PENDING
    error_message: str | None = None
    admin_notes: str | None = None
    submitted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def emoji(self) -> str:
        return "🎬" if self.media_type == "movie" else "📺"

    def title_line(self) -> str:
        year = f" ({self.year})" if self.year else ""
        return f"{self.emoji} *{self.title}{year}*"

    @classmethod
    def from_result(
        cls,
        result: NormalizedResult,
        *,
        requester_id: str,
        requester_address: str | None,
        contact_name: str | None = None,
        selected_seasons: list[int] | None = None,
    ) -> "MediaRequest":
        media_type: Literal["movie", "series"] = (
            "movie" if result.media_type == "movie" else "series"
        )
        return cls(
            requester_id=requester_id,
            requester_address=requester_address,
            contact_name=contact_name,
            media_type=media_type,
            title=result.title,
            year=result.year,
            tmdb_id=result.tmdb_id,
            tvdb_id=result.tvdb_id,
            imdb_id=result.imdb_id,
            selected_seasons=selected_seasons if media_type == "series" else None,
        )
