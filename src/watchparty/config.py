from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    app_name: str = Field(default="Watch Party", description="Human readable client name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug logging")
    log_level: str = Field(default="INFO", description="Root logging level")

    store_backend: str = Field(
        default="memory",
        description="Realtime store adapter to use (memory or redis)",
    )
    redis_url: str | None = Field(default=None, description="Redis URL for the realtime store")
    redis_prefix: str = Field(default="watchparty", description="Key and channel prefix in Redis")
    disconnect_lease_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Lifetime of the liveness lease backing disconnect hooks in Redis.",
    )
    store_recovery_base_delay_seconds: float = Field(default=0.5, ge=0)
    store_recovery_max_delay_seconds: float = Field(default=30.0, ge=0)

    playback_throttle_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Minimum spacing between two playback state writes from one client.",
    )
    playback_position_delta_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Position change below which a playback write is not worth sending.",
    )
    seek_tolerance_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Drift tolerated between the player and the shared position before seeking.",
    )
    position_report_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Interval between position reports while the player is playing.",
    )
    echo_suppression_events: int = Field(
        default=2,
        ge=0,
        description="Player events ignored after a programmatic player command.",
    )
    echo_suppression_window_seconds: float = Field(
        default=1.5,
        ge=0,
        description="Time after a programmatic command during which player events count as echoes.",
    )

    session_expiry_seconds: int = Field(default=3600, gt=0)
    session_cache_path: Path | None = Field(
        default=None,
        description="JSON file persisting the last joined session; in-memory when unset.",
    )
    session_cache_key: str = Field(default="watchparty_session")

    reaper_interval_seconds: float = Field(default=3600.0, gt=0)
    room_timeout_seconds: float = Field(
        default=7200.0,
        gt=0,
        description="Age after which an empty room is deleted by the reaper.",
    )
    room_code_attempts: int = Field(default=5, gt=0)

    youtube_api_key: str | None = Field(default=None, description="YouTube Data API key")
    youtube_search_url: AnyHttpUrl = Field(
        default="https://www.googleapis.com/youtube/v3/search",
        description="Endpoint used for content search",
    )
    search_max_results: int = Field(default=5, ge=1, le=50)
    search_timeout_seconds: float = Field(default=10.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="WATCHPARTY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("store_backend", mode="before")
    @classmethod
    def normalise_backend(cls, value: Any) -> str:
        if value in (None, "", Ellipsis):
            return "memory"
        lowered = str(value).strip().lower()
        if lowered not in {"memory", "redis"}:
            raise ValueError(f"Unsupported store backend '{value}'")
        return lowered

    @field_validator("session_cache_path", mode="before")
    @classmethod
    def resolve_session_cache_path(cls, value: str | Path | None) -> Path | None:
        if value in (None, "", Ellipsis):
            return None
        if isinstance(value, Path):
            return value.expanduser().resolve()
        return Path(value).expanduser().resolve()

    @field_validator("log_level", mode="before")
    @classmethod
    def normalise_log_level(cls, value: Any) -> str:
        if value in (None, "", Ellipsis):
            return "INFO"
        return str(value).strip().upper()


@lru_cache
def get_settings() -> Settings:
    return Settings()
