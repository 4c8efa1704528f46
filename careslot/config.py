"""Configuration management for CareSlot."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CARESLOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/careslot.db",
        description="SQLAlchemy async DSN for the scheduling store",
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Optimistic concurrency
    cas_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts per unit of work before surfacing a Conflict",
    )
    cas_backoff_min_seconds: float = Field(default=0.01, ge=0)
    cas_backoff_max_seconds: float = Field(default=0.5, ge=0)

    # Slot inventory
    hold_ttl_minutes: int = Field(
        default=10,
        ge=1,
        description="Lifetime of an optimistic slot hold",
    )
    list_page_size: int = Field(
        default=100,
        ge=1,
        description="Page size used when streaming available slots",
    )
    default_timezone: str = Field(default="UTC")

    # Notifications
    notification_sink: Literal["log", "jsonl", "webhook"] = Field(default="log")
    notification_log_dir: Path = Field(
        default=Path("./data/notifications"),
        description="Directory for the JSON Lines notification sink",
    )
    notification_webhook_url: str = Field(
        default="",
        description="Endpoint receiving scheduling events when the webhook sink is used",
    )
    notification_timeout: float = Field(default=5.0, description="Webhook timeout in seconds")
    notification_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Delivery attempts per event before it is parked",
    )

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    api_key: str = Field(
        default="",
        description="API key for authenticating requests",
    )

    # Debug
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode (exposes error details in responses)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    @property
    def is_sqlite(self) -> bool:
        """SQLite allows a single writer at a time."""
        return self.database_url.startswith("sqlite")

    @property
    def has_webhook(self) -> bool:
        return bool(self.notification_webhook_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
