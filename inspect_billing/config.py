"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from decimal import Decimal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Inspection Billing API"
    api_version: str = "0.1.0"
    api_description: str = "Inspection credit ledger and checkout reconciliation"

    # Security - service-to-service key, checked only when set
    api_key: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "inspection-billing-api"
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_...
    stripe_success_url: str = "http://localhost:5173/billing?session_id={CHECKOUT_SESSION_ID}"
    stripe_cancel_url: str = "http://localhost:5173/billing?cancelled=true"
    stripe_portal_return_url: str = "http://localhost:5173/billing"
    provider_timeout_seconds: float = 10.0

    # Checkout confirmation polling
    confirm_poll_attempts: int = 5
    confirm_poll_interval_seconds: float = 2.0

    # Pricing Configuration
    base_currency: str = "GBP"
    annual_discount_percentage: Decimal = Decimal("16.70")
    topup_unit_price_minor: int = 75  # 75p per credit in base currency

    # Ledger event streaming
    event_queue_size: int = 100
    event_keepalive_seconds: float = 15.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not Decimal("0") <= self.annual_discount_percentage < Decimal("100"):
            errors.append(
                f"ANNUAL_DISCOUNT_PERCENTAGE must be in [0, 100), got: {self.annual_discount_percentage}"
            )

        if self.provider_timeout_seconds <= 0:
            errors.append("PROVIDER_TIMEOUT_SECONDS must be positive")

        if self.confirm_poll_attempts < 1:
            errors.append("CONFIRM_POLL_ATTEMPTS must be at least 1")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def stripe_configured(self) -> bool:
        """Whether checkout and webhooks can reach Stripe."""
        return bool(self.stripe_api_key)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
