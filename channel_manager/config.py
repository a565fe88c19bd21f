"""
Channel Manager Configuration
=============================

Environment-driven settings for the channel synchronization engine.
Every value can be overridden with a ``CHANNEL_MANAGER_``-prefixed
environment variable or an ``.env`` file.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings shared by all channel manager components."""

    model_config = SettingsConfigDict(
        env_prefix="CHANNEL_MANAGER_",
        env_file=".env",
        extra="ignore",
    )

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_RETRIES: int = 3
    HTTP_RETRY_DELAY_SECONDS: float = 1.0
    RATE_LIMIT_FALLBACK_SECONDS: int = 60

    # Scheduling
    MIN_SYNC_INTERVAL_MINUTES: int = 5

    # Inbound webhooks
    WEBHOOK_SECRET: str = ""
    WEBHOOK_DEDUP_TTL_SECONDS: int = 86400

    # iCal
    PUBLIC_BASE_URL: str = "https://app.example.com"
    EXPORT_SIGNING_KEY: str = "change-me"
    ICAL_PRODID: str = "-//Channel Manager//NONSGML Calendar//EN"
    ICAL_UID_DOMAIN: str = "channel-manager.local"
    ICAL_EXPORT_DAYS: int = 90
    LOCAL_TIMEZONE: str = "UTC"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


settings = Settings()
