"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``METERLINK_`` prefix; aggregator credentials use their
canonical environment variable names via ``validation_alias``.
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
    """Central configuration for the MeterLink service.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``METERLINK_``; Africa's Talking
    keys use their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="METERLINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Aggregator (Africa's Talking) ──────────────────────────────────
    aggregator: Literal["africastalking", "mock"] = "mock"
    at_username: str = Field(default="", validation_alias="AFRICAS_TALKING_USERNAME")
    at_api_key: str = Field(default="", validation_alias="AFRICAS_TALKING_API_KEY")
    at_base_url: str = ""  # empty selects live or sandbox from the username
    aggregator_http_timeout: float = 10.0

    # ── Utility provider ───────────────────────────────────────────────
    provider_short_code: str = "95551"
    provider_sender_ids: list[str] = Field(
        default_factory=lambda: ["95551", "+25495551", "USSD_KPLC"],
    )

    # ── Correlation timing (seconds) ───────────────────────────────────
    balance_timeout_seconds: float = 30.0
    units_timeout_seconds: float = 30.0
    token_timeout_seconds: float = 60.0  # token generation is slower upstream
    poll_base_interval: float = 5.0
    poll_backoff_factor: float = 1.5
    poll_max_interval: float = 15.0

    # ── Storage ────────────────────────────────────────────────────────
    redis_url: str = Field(default="", validation_alias="REDIS_URL")
    persist_fallback_results: bool = True

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")
    api_key: str = ""
    cors_origins: str = ""  # comma separated; production only

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def aggregator_configured(self) -> bool:
        return bool(self.at_username and self.at_api_key)


# Module-level singleton: import ``settings`` everywhere.
settings = Settings()
