"""
Application Settings for Tideflow Billing

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    STRIPE_WEBHOOK_SECRET is optional at load time so that tooling (alembic,
    scripts) can import settings; the API refuses to start without it.
    """

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    frontend_url: str = "http://localhost:3000"
    allowed_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Admin API key for operational billing routes
    admin_api_key: Optional[str] = None

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_enterprise_price_id: Optional[str] = None
    stripe_timeout_seconds: float = 15.0
    stripe_max_network_retries: int = 2

    # Reconciliation
    reconciliation_sweep_limit: int = 10
    reconciliation_sweep_interval_seconds: int = 0  # 0 disables the periodic sweep
    webhook_max_attempts: int = 5

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_reconciliation_bounds(self) -> "Settings":
        """Reject bounds that would disable idempotent retries or sweeps."""
        if self.webhook_max_attempts < 1:
            raise ValueError("WEBHOOK_MAX_ATTEMPTS must be at least 1")

        if not 1 <= self.reconciliation_sweep_limit <= 100:
            # Stripe caps list pages at 100 objects
            raise ValueError("RECONCILIATION_SWEEP_LIMIT must be between 1 and 100")

        if self.stripe_timeout_seconds <= 0:
            raise ValueError("STRIPE_TIMEOUT_SECONDS must be positive")

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


# Convenience export for direct import
settings = get_settings()
