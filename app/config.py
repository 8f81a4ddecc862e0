"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

STORAGE_BACKENDS = ("memory", "database")


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage - "memory" keeps ledgers in-process, "database" uses PostgreSQL
    storage_backend: str = "memory"

    # Database Configuration - required only for the database backend
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Try-On Usage Gate API"
    api_version: str = "0.1.0"
    api_description: str = "Usage quotas, credits and upstream rate limits for virtual try-on"

    # Security - shared secret for admin endpoints (X-API-Key), disabled when unset
    api_key: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "tryon-usage-gate"

    # Plans
    free_monthly_limit: int = 3
    premium_monthly_limit: int = 25
    premium_price: int = 199  # INR per month
    currency: str = "INR"

    # One-time credits
    pay_per_use_price: int = 29  # INR recorded per consumed credit
    credit_expiry_days: int = 30
    premium_period_days: int = 30  # used when an activation omits its period end

    # Upstream rate limits (image API allows 15 RPM / 1500 RPD)
    rate_limit_per_minute: int = 10
    rate_limit_per_hour: int = 100
    rate_limit_per_day: int = 1000
    rate_limit_key_prefix: str = "tryon_rate_limit"

    # Ledger compare-and-set retries
    ledger_max_cas_retries: int = 5

    # Payment webhooks - endpoint rejects every call when unset
    webhook_secret: str = ""

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

        if self.storage_backend not in STORAGE_BACKENDS:
            errors.append(
                f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}, "
                f"got: {self.storage_backend}"
            )
        elif self.storage_backend == "database":
            if not self.database_url:
                errors.append("DATABASE_URL is required when STORAGE_BACKEND=database")
            elif not self.database_url.startswith(("postgresql", "postgres")):
                errors.append(
                    f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )

        for name in ("rate_limit_per_minute", "rate_limit_per_hour", "rate_limit_per_day"):
            if getattr(self, name) <= 0:
                errors.append(f"{name.upper()} must be positive")

        for name in ("free_monthly_limit", "premium_monthly_limit"):
            if getattr(self, name) < 0:
                errors.append(f"{name.upper()} cannot be negative")

        if self.credit_expiry_days <= 0:
            errors.append("CREDIT_EXPIRY_DAYS must be positive")

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


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
