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
    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Chat Credits API"
    api_version: str = "0.1.0"
    api_description: str = "Token economy and message gating for persona chat"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "chat-credits-api"

    # Token economy
    free_message_limit: int = 10
    default_unlock_price: Decimal = Decimal("0.50")
    default_lock_chance: float = 0.05
    subscription_period_days: int = 30
    min_custom_token_amount: int = 10

    # Read paths that gate availability (free messages, subscription lookup,
    # chat eligibility) report permissive defaults on storage errors
    fail_open_reads: bool = True

    # Payment gateway
    payment_provider: Literal["coinbase", "mock"] = "coinbase"
    coinbase_api_key: str = ""
    coinbase_webhook_secret: str = ""
    coinbase_api_url: str = "https://api.commerce.coinbase.com"
    gateway_timeout_seconds: float = 10.0
    app_url: str = "http://localhost:3000"

    # Stored payment methods per user
    max_payment_methods: int = 10

    # Batch jobs
    cron_secret: str = ""
    auto_topup_interval_seconds: int = 300
    renewal_interval_seconds: int = 3600

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

        if not 0.0 <= self.default_lock_chance <= 1.0:
            errors.append(f"DEFAULT_LOCK_CHANCE must be within [0, 1], got {self.default_lock_chance}")

        if self.free_message_limit < 0:
            errors.append("FREE_MESSAGE_LIMIT cannot be negative")

        if self.max_payment_methods < 1:
            errors.append("MAX_PAYMENT_METHODS must be at least 1")

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
