"""
Application Settings for Billing Sync

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

    Two datastore URLs are supported:
    - DATABASE_URL: privileged connection (service role, bypasses RLS).
      Used by webhooks, the cancellation enforcer and admin operations.
    - DATABASE_SCOPED_URL: low-privilege connection for user-facing reads.
      Falls back to DATABASE_URL when not set; production should set it so
      row-level security applies to user-facing reads.
    """

    # Supabase Configuration
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None
    supabase_password: Optional[str] = None

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    frontend_url: str = "http://localhost:5173"
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance_seconds: int = 300
    stripe_api_version: Optional[str] = None

    # Price IDs (override the plan catalog defaults)
    stripe_price_id_basic_monthly: Optional[str] = None
    stripe_price_id_basic_annual: Optional[str] = None
    stripe_price_id_pro_monthly: Optional[str] = None
    stripe_price_id_pro_annual: Optional[str] = None
    stripe_price_id_elite_monthly: Optional[str] = None
    stripe_price_id_elite_annual: Optional[str] = None
    stripe_price_id_scale_monthly: Optional[str] = None
    stripe_price_id_scale_annual: Optional[str] = None

    # Provider call timeout
    provider_timeout_seconds: float = 10.0

    # Post-checkout verification poller
    checkout_poll_attempts: int = 3
    checkout_poll_delay_seconds: float = 2.0
    checkout_poll_backoff: float = 1.0
    checkout_poll_deadline_seconds: Optional[float] = 15.0

    # Reconciliation
    drift_tolerance_seconds: int = 5

    # Admin access (in addition to app_metadata.role == "admin")
    admin_user_ids: list[str] = []

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_scoped_url: Optional[str] = None
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
    def validate_stripe_keys(self) -> "Settings":
        """Production deployments must be able to verify webhooks."""
        if self.is_production and not self.stripe_webhook_secret:
            raise ValueError("STRIPE_WEBHOOK_SECRET is required in production")

        if self.is_production and not self.stripe_secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required in production")

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
