"""Configuration management using pydantic-settings for lazy loading."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings are lazily loaded when first accessed via get_settings().
    """

    model_config = SettingsConfigDict(
        env_prefix="BREAKING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Gamma API
    api_url: str = Field(
        default="https://gamma-api.polymarket.com",
        description="Gamma market API base URL",
    )
    http_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for every outbound HTTP call",
    )
    http_rps: float = Field(
        default=2.0,
        description="Gamma API requests per second rate limit",
    )
    api_cache_ttl: float = Field(
        default=30.0,
        description="Seconds to cache Gamma list responses (0 disables)",
    )

    # Database
    db_path: str = Field(
        default="breaking_markets.db",
        description="SQLite database file path",
    )

    # HTTP server
    web_host: str = Field(default="127.0.0.1", description="HTTP server bind host")
    web_port: int = Field(default=8080, description="HTTP server port")
    cron_secret: Optional[str] = Field(
        default=None,
        description="Bearer secret required by scheduled endpoints when set",
    )

    # Email delivery
    site_url: str = Field(
        default="https://palpiteiros.com",
        description="Public site URL used in email links",
    )
    unsubscribe_path: str = Field(
        default="/functions/v1/unsubscribe-newsletter",
        description="Path under site_url that handles unsubscribe links",
    )
    resend_api_key: Optional[str] = Field(default=None, description="Resend API key")
    sendgrid_api_key: Optional[str] = Field(default=None, description="SendGrid API key")
    email_from_address: str = Field(
        default="noreply@palpiteiros.com",
        description="Sender address for newsletter emails",
    )
    email_from_name: str = Field(default="Palpiteiros", description="Sender display name")
    deploy_env: str = Field(
        default="development",
        description="Deployment environment (development, staging, production)",
    )

    # Sync
    sync_interval_sec: int = Field(
        default=0,
        description="Background sync interval in seconds (0 disables)",
    )
    sync_page_size: int = Field(default=100, description="Gamma page size for active sync")
    sync_max_markets: int = Field(
        default=1000,
        description="Upper bound on markets pulled per active sync",
    )
    sync_batch_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Price history rows per bulk insert",
    )

    # Newsletter
    newsletter_batch_size: int = Field(default=50, description="Subscribers per batch")
    newsletter_batch_delay_sec: float = Field(
        default=1.0,
        description="Pause between subscriber batches",
    )
    subscribe_rate_limit: int = Field(
        default=5,
        description="Subscription attempts allowed per email per window",
    )
    subscribe_rate_window_sec: float = Field(
        default=3600.0,
        description="Subscription rate limit window in seconds",
    )

    # Ranking
    ranking_cache_ttl: float = Field(
        default=30.0,
        description="Seconds to cache breaking market responses (0 disables)",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: str = Field(
        default="json",
        description="Log output format (json, text)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
