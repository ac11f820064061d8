"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``SENIORHUB_`` prefix; infrastructure settings use
their canonical environment variable names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the SeniorHub alert service.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``SENIORHUB_``; infra keys use
    their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="SENIORHUB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Redis ──────────────────────────────────────────────────────────
    # Empty string selects the in-process alert backend.
    redis_url: str = Field(default="", validation_alias="REDIS_URL")

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")
    cors_origins: str = Field(default="", validation_alias="CORS_ORIGINS")

    # ── Rate Limiting ──────────────────────────────────────────────────
    rate_limit_per_minute: int = Field(default=60, validation_alias="RATE_LIMIT_PER_MINUTE")
    relay_rate_limit_per_minute: int = Field(default=10, gt=0)
    trusted_proxy_count: int = Field(
        default=1,
        ge=0,
        validation_alias="TRUSTED_PROXY_COUNT",
    )

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── SMS delivery ───────────────────────────────────────────────────
    sms_channel: Literal["mock", "relay", "semaphore"] = "mock"
    sms_relay_url: str = ""
    sms_request_timeout: float = Field(default=10.0, gt=0)  # seconds

    semaphore_api_key: str = Field(default="", validation_alias="SEMAPHORE_API_KEY")
    semaphore_sender_name: str = Field(default="SeniorHub", validation_alias="SEMAPHORE_SENDER_NAME")
    semaphore_api_url: str = "https://api.semaphore.co/api/v4/messages"
    semaphore_default_country_code: str = "+63"

    # ── Emergency pipeline ─────────────────────────────────────────────
    emergency_call_number: str = "911"
    location_timeout_ms: int = Field(default=5_000, gt=0)
    location_freshness_seconds: int = Field(default=120, ge=0)
    alert_timezone: str = "Asia/Manila"
    default_subject_name: str = "Senior User"

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Module-level singleton; import ``settings`` everywhere.
settings = Settings()
