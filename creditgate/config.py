"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from decimal import Decimal
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Credit Gateway API"
    api_version: str = "0.1.0"
    api_description: str = "Credential refresh and credit metering for the chat gateway"

    # Credential encryption (Fernet key, urlsafe base64, 32 bytes)
    credential_encryption_key: str = ""

    # Upstream OAuth provider (refresh grant only, code exchange is external)
    oauth_provider: str = "ares"
    oauth_token_url: str = "https://oauth.joinares.com/oauth/token"
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    credential_skew_seconds: int = 300  # refresh 5 minutes before expiry
    refresh_credential_ttl_seconds: int = 30 * 24 * 3600  # when the grant omits it
    token_exchange_timeout: float = 30.0

    # Metering authority
    authority_base_url: str = "https://oauth.joinares.com/v1"
    authority_client_name: str = "ChatEBT"
    authority_timeout: float = 10.0

    # Balance cache
    balance_cache_ttl_seconds: float = 10.0
    balance_pending_ttl_seconds: float | None = None  # defaults to cache TTL
    balance_max_staleness_seconds: float = 60.0

    # Accounting
    accounting_mode: Literal["remote", "local"] = "remote"
    credit_unit_price: Decimal = Decimal("0.002")  # USD per credit
    charge_epsilon: Decimal = Decimal("0.001")
    minimum_charge: Decimal = Decimal("0.01")
    cancel_rate: Decimal = Decimal("1.15")
    default_token_rate: Decimal = Decimal("6")  # USD per 1M tokens

    # Local ledger retry policy
    ledger_max_attempts: int = 10
    ledger_base_delay_seconds: float = 0.05
    ledger_max_delay_seconds: float = 2.0

    # Schema migrations
    run_migrations_on_startup: bool = False

    # Token maintenance
    token_maintenance_enabled: bool = True
    token_maintenance_interval_seconds: int = 900  # 15 minutes
    token_activity_window_days: int = 30

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "credit-gateway"

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

        if not self.credential_encryption_key:
            errors.append("CREDENTIAL_ENCRYPTION_KEY is required but empty or missing")

        if self.cancel_rate <= 1:
            errors.append(f"CANCEL_RATE must be greater than 1.0, got: {self.cancel_rate}")

        if self.ledger_max_attempts < 1:
            errors.append("LEDGER_MAX_ATTEMPTS must be at least 1")

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
    def pending_ttl_seconds(self) -> float:
        """Pending reservation lifetime (falls back to the cache TTL)."""
        if self.balance_pending_ttl_seconds is None:
            return self.balance_cache_ttl_seconds
        return self.balance_pending_ttl_seconds


# Global settings instance - validates at import time
settings = Settings()
