import logging
from typing import List, Optional

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Application settings loaded from environment variables or .env file."""

    # Odds Provider
    odds_api_base_url: HttpUrl = Field(
        "https://api.the-odds-api.com/v4",
        description="Base URL of the odds provider API.",
    )
    odds_api_key: Optional[str] = Field(
        None, description="API key for the odds provider."
    )
    odds_regions: List[str] = Field(
        ["us", "uk", "eu", "au"], description="Regions requested from the provider."
    )
    request_timeout: float = Field(
        30.0, gt=0, description="HTTP timeout in seconds for provider requests."
    )

    # Fetch Cache
    cache_default_ttl_ms: int = Field(30_000, gt=0)
    cache_stale_ms: int = Field(
        300_000, gt=0, description="How long an expired entry stays usable as stale."
    )
    cache_error_stale_ms: int = Field(
        600_000,
        gt=0,
        description="Wider stale bound used when the network keeps failing.",
    )
    cache_max_entries: int = Field(100, gt=0)
    live_ttl_ms: int = Field(5_000, gt=0)

    # Retry
    retry_attempts: int = Field(
        3, ge=0, description="Retries after the first failed attempt."
    )
    retry_base_delay: float = Field(1.0, ge=0, description="Backoff multiplier (s).")
    retry_max_delay: float = Field(10.0, ge=0)

    # Polling
    live_poll_interval: float = Field(30.0, gt=0)
    pregame_poll_interval: float = Field(120.0, gt=0)

    # Detection
    bookmaker_stale_minutes: float = Field(30.0, gt=0)
    default_bankroll: float = Field(1000.0, ge=0)
    middle_bankroll_fraction: float = Field(
        0.10, gt=0, le=1, description="Share of bankroll a single middle may use."
    )
    opportunity_ttl_ms: int = Field(1_800_000, gt=0)
    min_profit_percent: float = Field(0.5, ge=0)
    min_middle_gap: float = Field(3.0, ge=0)
    min_middle_probability: float = Field(0.15, ge=0, le=1)

    # Logging Configuration
    log_level: str = Field(
        "INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)."
    )

    # Pydantic Settings Configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


def load_settings() -> AppSettings:
    """Loads and validates application settings."""
    try:
        settings = AppSettings()
        log_level_upper = settings.log_level.upper()
        # Validate log_level even if loaded from .env
        if log_level_upper not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            logging.warning(
                f"Invalid LOG_LEVEL '{settings.log_level}' found in .env or default. Using INFO."
            )
            settings.log_level = "INFO"
        else:
            settings.log_level = log_level_upper
        return settings
    except Exception as e:
        logging.exception(f"Error loading application settings: {e}")
        raise SystemExit("Failed to load application settings. Exiting.")


settings: AppSettings = load_settings()
