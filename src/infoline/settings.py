"""Configuration for the data-access layer."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from infoline.duration import parse_duration


class Settings(BaseSettings):
    """Settings loaded from ``INFOLINE_*`` environment variables or ``.env``.

    Duration fields accept ``"100ms"``, ``"15s"``, ``"5m"``, ``"2h"``,
    ``"1d"`` or integer milliseconds and hold milliseconds once loaded.
    """

    model_config = SettingsConfigDict(
        env_prefix="INFOLINE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Platform
    platform_url: str = "http://localhost:54321"
    platform_api_key: SecretStr = SecretStr("")
    application_name: str = "infoline"
    request_timeout: int = 15_000

    # Cache
    cache_default_ttl: int = 300_000
    cache_max_entries: int = 100
    cache_persist: bool = False
    revalidate_delay: int = 100

    # Retry
    retry_max_retries: int = 2
    retry_initial_delay: int = 1_000
    retry_max_delay: int = 10_000

    # Offline queue
    queue_capacity: int = 100
    queue_max_attempts: int = 3

    # Storage
    storage_prefix: str = "infoline_"
    redis_url: str | None = None

    # Connectivity
    connectivity_check_interval: int = 30_000

    # Logging
    log_level: str = "INFO"

    @field_validator(
        "request_timeout",
        "cache_default_ttl",
        "revalidate_delay",
        "retry_initial_delay",
        "retry_max_delay",
        "connectivity_check_interval",
        mode="before",
    )
    @classmethod
    def validate_duration(cls, value: Any) -> int:
        """Parse human-readable durations into milliseconds."""
        return parse_duration(value)

    @field_validator("request_timeout", "cache_default_ttl")
    @classmethod
    def validate_positive_duration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive duration")
        return value

    @field_validator("cache_max_entries", "queue_capacity", "queue_max_attempts")
    @classmethod
    def validate_at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("retry_max_retries")
    @classmethod
    def validate_max_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unsupported log level: {value}")
        return level


@lru_cache
def get_settings() -> Settings:
    """Settings of the running process, read once."""
    return Settings()
