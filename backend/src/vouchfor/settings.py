"""Application settings and configuration."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="VOUCHFOR_",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "vouchfor"
    env: str = "development"
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"
    allowed_origins: str = "*"

    # Database
    database_url: str = "sqlite:///./vouchfor.db"
    database_echo: bool = False

    # Stripe
    stripe_webhook_secret: str | None = None
    stripe_webhook_tolerance: int = 300  # Seconds of allowed timestamp drift

    # Click tracking
    click_record_timeout_seconds: float = 2.0
    default_cookie_duration_days: int = 60
    track_rate_limit: str = "60/minute"
    trust_proxy_headers: bool = False  # Read visitor IP from X-Forwarded-For

    # Outbox worker
    outbox_max_attempts: int = Field(default=8, ge=1)
    outbox_backoff_seconds: float = 5.0
    outbox_max_backoff_seconds: float = 3600.0
    outbox_batch_size: int = 50
    outbox_lease_seconds: int = 120  # Running tasks older than this are reclaimed
    worker_poll_interval: float = 2.0

    @property
    def is_production(self) -> bool:
        return self.env == "production"


# Global settings instance
settings = Settings()
