"""
Application Settings for the Storefront Subscriptions backend

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Literal, Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every value has a default so the engine can be imported and tested
    without a populated environment. Production deployments must provide
    MERCADOPAGO_ACCESS_TOKEN (enforced by the validator below).
    """

    # Application Settings
    environment: Literal["development", "production", "testing"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration (browser return page calls verify-return)
    frontend_url: str = "http://localhost:3000"
    allowed_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Database Configuration (SQLModel/SQLAlchemy)
    supabase_url: Optional[str] = None
    supabase_password: Optional[str] = None
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    # MercadoPago Configuration
    mercadopago_access_token: Optional[str] = None
    mercadopago_api_base_url: str = "https://api.mercadopago.com"
    mercadopago_webhook_secret: Optional[str] = None
    provider_timeout_seconds: float = 10.0
    default_currency: str = "MXN"

    # Retry Configuration (provider HTTP calls)
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    # External reference generation
    reference_prefix: str = "SUB"
    reference_max_length: int = 64
    reference_time_window_minutes: int = 5

    # Idempotency (locks + cached results)
    idempotency_ttl_seconds: int = 300
    idempotency_max_retries: int = 5
    idempotency_retry_interval_seconds: float = 1.0

    # Reconciliation matching score bands
    match_high_threshold: int = 85
    match_medium_threshold: int = 65

    # Scheduled sync sweep
    sync_default_max_age_hours: int = 24
    sync_page_size: int = 50
    sync_item_delay_seconds: float = 0.1
    sync_amount_tolerance: float = 5.0
    sync_search_window_hours: int = 24
    sync_recent_grace_minutes: int = 5

    # Sweep health alerting
    alert_critical_failure_rate: float = 0.5
    alert_failed_count_threshold: int = 5

    # Notifications (confirmation emails, operational alerts)
    notification_webhook_url: Optional[str] = None
    notification_max_attempts: int = 3
    notification_retry_delay_seconds: float = 2.0

    # Shared secret for the scheduled sync trigger
    cron_secret: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_reconciliation_settings(self) -> "Settings":
        """Validate provider credentials and matching bands."""
        if self.environment == "production" and not self.mercadopago_access_token:
            raise ValueError(
                "MERCADOPAGO_ACCESS_TOKEN required when ENVIRONMENT=production"
            )

        if self.match_medium_threshold >= self.match_high_threshold:
            raise ValueError(
                "MATCH_MEDIUM_THRESHOLD must be lower than MATCH_HIGH_THRESHOLD"
            )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

