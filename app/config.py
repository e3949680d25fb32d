"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


ApprovalMode = Literal["auto_approve", "auto_deny", "manual"]
MessageFilterType = Literal["prefix", "keyword"]


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="chatarr", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", alias="LOG_LEVEL"
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./chatarr.db", alias="DATABASE_URL"
    )

    search_timeout_seconds: float = Field(
        default=8.0, alias="SEARCH_TIMEOUT", gt=0, le=60
    )
    service_http_timeout_seconds: float = Field(
        default=9.0, alias="SERVICE_HTTP_TIMEOUT", gt=0, le=120
    )
    search_cache_ttl_seconds: int = Field(
        default=300, alias="SEARCH_CACHE_TTL", ge=1
    )
    cache_sweep_interval_seconds: int = Field(
        default=60, alias="CACHE_SWEEP_INTERVAL", ge=1
    )
    session_ttl_seconds: int = Field(default=300, alias="SESSION_TTL", ge=30)
    default_max_results: int = Field(
        default=5, alias="DEFAULT_MAX_RESULTS", ge=1, le=20
    )

    approval_mode: ApprovalMode = Field(
        default="auto_approve", alias="APPROVAL_MODE"
    )
    approval_exceptions_enabled: bool = Field(
        default=False, alias="APPROVAL_EXCEPTIONS_ENABLED"
    )
    approval_exceptions: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), alias="APPROVAL_EXCEPTIONS"
    )

    admin_notifications_enabled: bool = Field(
        default=False, alias="ADMIN_NOTIFICATIONS_ENABLED"
    )
    admin_notification_address: str | None = Field(
        default=None, alias="ADMIN_NOTIFICATION_ADDRESS"
    )

    chat_gateway_url: HttpUrl | None = Field(default=None, alias="CHAT_GATEWAY_URL")
    chat_gateway_token: str | None = Field(default=None, alias="CHAT_GATEWAY_TOKEN")

    message_filter_type: MessageFilterType | None = Field(
        default=None, alias="MESSAGE_FILTER_TYPE"
    )
    message_filter_value: str | None = Field(
        default=None, alias="MESSAGE_FILTER_VALUE"
    )

    @field_validator("approval_mode", mode="before")
    @classmethod
    def _parse_approval_mode(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_")
        return value

    @field_validator("approval_exceptions", mode="before")
    @classmethod
    def _parse_exceptions(cls, value: object) -> tuple[str, ...]:
        """Normalise requester identities listed as approval exceptions."""

        if value is None:
            return ()
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("APPROVAL_EXCEPTIONS must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            if entry and entry not in cleaned:
                cleaned.append(entry)
        return tuple(cleaned)

    @field_validator("admin_notification_address", "message_filter_value", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("message_filter_type", mode="before")
    @classmethod
    def _parse_filter_type(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return lowered or None
        return value

    @model_validator(mode="after")
    def _check_admin_notifications(self) -> "Settings":
        """Operator notifications need somewhere to be delivered."""

        if self.admin_notifications_enabled and not self.admin_notification_address:
            raise ValueError(
                "ADMIN_NOTIFICATION_ADDRESS is required when admin notifications are enabled"
            )
        return self

    @property
    def message_filter_active(self) -> bool:
        return bool(self.message_filter_type and self.message_filter_value)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
