"""
Configuration management for the Tollgate billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)

Secrets and provider identifiers have no defaults. Blank or whitespace-only
values are treated as absent, and startup fails via validate_configuration().
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised at startup when required configuration is missing or invalid."""

    pass


# Report claims must outlive this many multiples of the provider timeout.
CLAIM_TTL_TIMEOUT_FACTOR = 4


def _blank_to_none(v: str | None) -> str | None:
    """Trim whitespace; treat empty strings as unset."""
    if v is None:
        return None
    v = str(v).strip()
    return v or None


class LemonSqueezyConfig(BaseSettings):
    """
    Lemon Squeezy provider configuration.

    Test mode uses the *_TEST values when present and falls back to the live
    values otherwise.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEMONSQUEEZY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str | None = Field(default=None, description="Live API key")
    store_id: str | None = Field(default=None, description="Store identifier")
    pro_variant_id: str | None = Field(
        default=None, description="Variant ID granting the flat-rate subscription tier"
    )
    payg_variant_id: str | None = Field(
        default=None, description="Variant ID granting the metered pay-per-use tier"
    )
    webhook_secret: str | None = Field(default=None, description="Webhook signing secret")

    test_mode: bool = Field(default=False)
    api_key_test: str | None = Field(default=None)
    store_id_test: str | None = Field(default=None)
    webhook_secret_test: str | None = Field(default=None)

    api_base_url: str = Field(default="https://api.lemonsqueezy.com")
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    max_retries: int = Field(default=3, ge=1, le=10)
    page_size: int = Field(default=100, ge=1, le=100)

    @field_validator(
        "api_key",
        "store_id",
        "pro_variant_id",
        "payg_variant_id",
        "webhook_secret",
        "api_key_test",
        "store_id_test",
        "webhook_secret_test",
        mode="before",
    )
    @classmethod
    def strip_blank(cls, v: str | None) -> str | None:
        return _blank_to_none(v)

    @property
    def effective_api_key(self) -> str | None:
        if self.test_mode:
            return self.api_key_test or self.api_key
        return self.api_key

    @property
    def effective_store_id(self) -> str | None:
        if self.test_mode:
            return self.store_id_test or self.store_id
        return self.store_id

    @property
    def effective_webhook_secret(self) -> str | None:
        if self.test_mode:
            return self.webhook_secret_test or self.webhook_secret
        return self.webhook_secret

    def missing_fields(self) -> list[str]:
        """Names of required settings that are absent."""
        required = {
            "LEMONSQUEEZY_API_KEY": self.effective_api_key,
            "LEMONSQUEEZY_STORE_ID": self.effective_store_id,
            "LEMONSQUEEZY_PRO_VARIANT_ID": self.pro_variant_id,
            "LEMONSQUEEZY_PAYG_VARIANT_ID": self.payg_variant_id,
            "LEMONSQUEEZY_WEBHOOK_SECRET": self.effective_webhook_secret,
        }
        return [name for name, value in required.items() if not value]


class CostLimitConfig(BaseSettings):
    """Spend ceilings for the three cost circuit breaker layers (USD)."""

    model_config = SettingsConfigDict(
        env_prefix="COST_LIMIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    daily: float = Field(default=50.0, gt=0, description="Global spend ceiling per UTC day")
    hourly: float = Field(default=5.0, gt=0, description="Global spend ceiling per UTC hour")
    user_daily: float = Field(default=1.0, gt=0, description="Per-user spend ceiling per UTC day")
    warning_ratio: float = Field(
        default=0.8,
        gt=0.0,
        lt=1.0,
        description="Fraction of a global ceiling that triggers an early warning",
    )

    @field_validator("hourly")
    @classmethod
    def validate_hourly_below_daily(cls, v: float, info) -> float:
        daily = info.data.get("daily")
        if daily is not None and v > daily:
            raise ValueError(f"hourly limit ({v}) must not exceed daily limit ({daily})")
        return v


class CounterStoreConfig(BaseSettings):
    """Counter store (Redis) connection for the cost circuit breaker."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")

    url: str | None = Field(
        default=None,
        description="redis:// URL. Unset uses the in-process store (development only)",
    )
    socket_timeout_seconds: float = Field(default=0.5, gt=0, le=10)

    @field_validator("url", mode="before")
    @classmethod
    def strip_blank(cls, v: str | None) -> str | None:
        return _blank_to_none(v)


class DatabaseConfig(BaseSettings):
    """Local relational store."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", extra="ignore")

    path: str = Field(default="./data/billing.db")
    busy_timeout_seconds: float = Field(default=5.0, gt=0, le=60)


class ReconciliationConfig(BaseSettings):
    """Drift detection thresholds and scheduling secret."""

    model_config = SettingsConfigDict(env_prefix="RECONCILIATION_", extra="ignore")

    renewal_tolerance_seconds: int = Field(default=86400, ge=0)
    usage_tolerance_percent: float = Field(default=5.0, ge=0.0, le=100.0)
    cron_secret: str | None = Field(default=None, description="Bearer token for admin/cron calls")
    unreported_grace_seconds: int = Field(
        default=300, ge=0, description="Minimum age before the sweep retries an unreported action"
    )

    @field_validator("cron_secret", mode="before")
    @classmethod
    def strip_blank(cls, v: str | None) -> str | None:
        return _blank_to_none(v)


class UsageReportingConfig(BaseSettings):
    """Metering claim lifetime."""

    model_config = SettingsConfigDict(env_prefix="USAGE_", extra="ignore")

    claim_ttl_seconds: int = Field(
        default=600,
        gt=0,
        description="Age after which an unfinished report claim may be taken over",
    )


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    max_webhook_body_size: int = Field(
        default=256 * 1024,
        ge=1024,
        description="Maximum webhook body size in bytes",
    )
    webhook_rate_limit: str = Field(default="300/minute")


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    json_output: bool = Field(default=True)
    colorized: bool = Field(default=False)

    service_name: str = Field(default="tollgate")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(default="development")


class Settings(BaseSettings):
    """Root configuration for the Tollgate service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    lemonsqueezy: LemonSqueezyConfig = Field(default_factory=LemonSqueezyConfig)
    cost_limits: CostLimitConfig = Field(default_factory=CostLimitConfig)
    counters: CounterStoreConfig = Field(default_factory=CounterStoreConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    usage: UsageReportingConfig = Field(default_factory=UsageReportingConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def validate_configuration(self) -> None:
        """
        Validate required values and cross-field constraints.

        Called at application startup. Missing provider settings are fatal.

        Raises:
            ConfigurationError: If any required value is absent
        """
        missing = self.lemonsqueezy.missing_fields()
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(sorted(missing))}"
            )

        if self.lemonsqueezy.pro_variant_id == self.lemonsqueezy.payg_variant_id:
            raise ConfigurationError(
                "LEMONSQUEEZY_PRO_VARIANT_ID and LEMONSQUEEZY_PAYG_VARIANT_ID must differ"
            )

        # A claim must outlive the slowest metering call or two reporters can bill
        # one action. httpx applies the timeout per phase, not per request.
        min_claim_ttl = CLAIM_TTL_TIMEOUT_FACTOR * self.lemonsqueezy.timeout_seconds
        if self.usage.claim_ttl_seconds <= min_claim_ttl:
            raise ConfigurationError(
                f"USAGE_CLAIM_TTL_SECONDS ({self.usage.claim_ttl_seconds}) must exceed "
                f"{CLAIM_TTL_TIMEOUT_FACTOR} x LEMONSQUEEZY_TIMEOUT_SECONDS ({min_claim_ttl:g})"
            )

        if self.lemonsqueezy.test_mode and self.logging.environment == "production":
            logging.warning("Lemon Squeezy test mode is enabled in the production environment")

        if not self.counters.url:
            if self.logging.environment == "production":
                raise ConfigurationError("REDIS_URL is required in production")
            logging.warning(
                "REDIS_URL not configured - cost counters are process-local (development only)"
            )

        if not self.reconciliation.cron_secret:
            logging.warning("RECONCILIATION_CRON_SECRET not configured - admin endpoints disabled")


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
