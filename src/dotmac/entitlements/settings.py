"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: BILLING__GRACE_PERIOD_DAYS=5
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class CacheBackendType(str, Enum):
    """Where resolved feature sets are cached."""

    LOCAL = "local"
    REDIS = "redis"


class GatewayProvider(str, Enum):
    """Supported payment gateway providers."""

    MOCK = "mock"
    RAZORPAY = "razorpay"


class TaxRule(BaseModel):
    """Tax applied to quotes for a billing country."""

    name: str = Field(description="Tax name shown to customers (GST, VAT, SST)")
    rate: float = Field(0.0, description="Tax rate in percent")
    inclusive: bool = Field(False, description="Prices already include tax")


def _default_tax_rules() -> dict[str, TaxRule]:
    return {
        "IN": TaxRule(name="GST", rate=18.0),
        "AE": TaxRule(name="VAT", rate=5.0),
        "UK": TaxRule(name="VAT", rate=20.0, inclusive=True),
        "SG": TaxRule(name="GST", rate=9.0),
        "MY": TaxRule(name="SST", rate=6.0),
        "US": TaxRule(name="Sales Tax", rate=0.0),
    }


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: DATABASE__URL=sqlite+aiosqlite://
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("dotmac-entitlements", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")
    api_prefix: str = Field("/api/v1/billing", description="Mount prefix for the billing API")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("dotmac", description="Database name")
        username: str = Field("dotmac", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Redis Configuration
    # ============================================================

    class RedisSettings(BaseModel):
        """Redis configuration."""

        url: str | None = Field(None, description="Full Redis URL")
        host: str = Field("localhost", description="Redis host")
        port: int = Field(6379, description="Redis port")
        password: str = Field("", description="Redis password")
        cache_db: int = Field(1, description="Cache database number")
        max_connections: int = Field(50, description="Max connections in pool")

        @property
        def cache_url(self) -> str:
            """Build cache Redis URL."""
            if self.url:
                return self.url
            if self.password:
                return f"redis://:{self.password}@{self.host}:{self.port}/{self.cache_db}"
            return f"redis://{self.host}:{self.port}/{self.cache_db}"

    redis: RedisSettings = RedisSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        correlation_id_header: str = Field("X-Correlation-ID", description="Correlation ID header")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Feature Cache
    # ============================================================

    class CacheSettings(BaseModel):
        """Feature resolution cache configuration."""

        backend: CacheBackendType = Field(CacheBackendType.LOCAL, description="Cache backend")
        feature_ttl_seconds: int = Field(60, description="TTL for resolved tenant features")
        max_size: int = Field(10000, description="Max entries for the local cache")
        key_prefix: str = Field("entitlements", description="Key prefix for shared caches")

    cache: CacheSettings = CacheSettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Subscription lifecycle configuration."""

        default_country: str = Field("IN", description="Billing country when tenant has none")
        grace_period_days: int = Field(3, description="Add-on grace period after lapse")
        free_plan_years: int = Field(100, description="Period length for free plans in years")
        pending_period_months: int = Field(
            1, description="Provisional period for a subscription awaiting payment"
        )
        upgrade_url: str = Field("/marketplace", description="Where denied callers can upgrade")
        tax_rules: dict[str, TaxRule] = Field(
            default_factory=_default_tax_rules, description="Quote tax rules per country"
        )

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Payment Gateway
    # ============================================================

    class PaymentGatewaySettings(BaseModel):
        """Payment provider configuration."""

        provider: GatewayProvider = Field(GatewayProvider.MOCK, description="Gateway provider")
        key_id: str = Field("", description="Provider API key id")
        key_secret: str = Field("", description="Provider API key secret")
        webhook_secret: str = Field("", description="Shared secret for webhook signatures")
        base_url: str = Field("https://api.razorpay.com/v1", description="Provider API base URL")
        timeout_seconds: float = Field(15.0, description="HTTP timeout for provider calls")
        max_retries: int = Field(3, description="Attempts for transient provider failures")
        backoff_seconds: float = Field(0.5, description="Initial retry backoff")

    payment_gateway: PaymentGatewaySettings = PaymentGatewaySettings()  # type: ignore[call-arg]

    # ============================================================
    # Audit
    # ============================================================

    class AuditSettings(BaseModel):
        """Denial audit configuration."""

        denial_window_seconds: int = Field(
            60, description="Minimum seconds between identical denial audit events"
        )
        denial_cache_size: int = Field(10000, description="Max tracked denial keys")

    audit: AuditSettings = AuditSettings()  # type: ignore[call-arg]

    # ============================================================
    # Rate Limiting
    # ============================================================

    class RateLimitSettings(BaseModel):
        """Rate limiting configuration."""

        enabled: bool = Field(True, description="Enable rate limiting")
        quote_limit: str = Field("60/minute", description="Limit for the public quote endpoint")
        storage_url: str | None = Field(
            None, description="Storage URL for distributed rate limiting"
        )

    rate_limit: RateLimitSettings = RateLimitSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Accept environment names in any case."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
