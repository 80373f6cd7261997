"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Retry policy shared by every Stripe operation
STRIPE_MAX_ATTEMPTS = 3
STRIPE_BACKOFF_MAX_SECONDS = 8


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_api_version: str = Field(default="2024-06-20", description="Stripe API version")
    stripe_timeout_seconds: float = Field(
        default=30.0, description="Upper bound for a single Stripe call (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    queue_prefix: str = Field(default="tohfa", description="Key prefix for job queues")

    # Fulfillment
    attempt_lock_ttl_seconds: int = Field(
        default=120, description="Attempt lock TTL (seconds); must outlive a whole tick"
    )
    topup_max_tries: int = Field(default=5, description="Scheduled delivery attempts per line")
    topup_retry_base_delay_ms: int = Field(
        default=60_000, description="Retry delay step; try N waits (N-1) steps"
    )
    topup_worker_concurrency: int = Field(default=10, description="Parallel topup ticks per worker")
    topup_worker_poll_interval: float = Field(
        default=1.0, description="Delayed job poll interval (seconds)"
    )
    completed_job_retention_seconds: int = Field(
        default=86400, description="How long finished job ids keep deduplicating"
    )

    # Delivery provider (AWCC eFill SOAP)
    awcc_soap_endpoint: str = Field(default="", description="AWCC eFill SOAP endpoint")
    awcc_soap_username: str = Field(default="", description="AWCC SOAP basic-auth user")
    awcc_soap_password: str = Field(default="", description="AWCC SOAP basic-auth password")
    awcc_originator_msisdn: str = Field(default="93701243940", description="Originator MSISDN")
    awcc_salespoint_name: str = Field(default="", description="Parent salespoint name")
    awcc_account_id: str = Field(default="", description="AWCC account id")
    awcc_product_name: str = Field(default="Default Product", description="eFill product name")
    delivery_timeout_seconds: float = Field(
        default=15.0, description="Delivery provider HTTP timeout (seconds)"
    )

    # Recurring top-ups
    recurring_scan_interval_seconds: int = Field(
        default=300, description="How often due schedules are scanned"
    )
    recurring_scan_batch_size: int = Field(default=500, description="Max schedules per scan")
    recurring_run_concurrency: int = Field(default=5, description="Parallel recurring runs")

    # Currencies
    settlement_currency: str = Field(default="AFN", description="Top-up settlement currency")
    charge_currency: str = Field(default="USD", description="Card charge currency")
    fx_rates_to_usd: Dict[str, Decimal] = Field(
        default_factory=lambda: {"USD": Decimal("1"), "AFN": Decimal("0.0142")},
        description="Units of USD per unit of currency",
    )

    # Application Configuration
    app_name: str = Field(default="topup-fulfillment", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )
    idempotency_cache_ttl: int = Field(
        default=86400, description="Idempotency cache TTL (seconds)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate the Stripe secret key prefix."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("settlement_currency", "charge_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    @model_validator(mode="after")
    def validate_lock_ttl(self) -> "Settings":
        """The attempt lock must not expire while a tick can still be running."""
        if self.attempt_lock_ttl_seconds <= self.tick_budget_seconds:
            raise ValueError(
                f"attempt_lock_ttl_seconds ({self.attempt_lock_ttl_seconds}) must exceed "
                f"the worst-case tick duration ({self.tick_budget_seconds}s: delivery "
                f"{self.delivery_timeout_seconds}s + Stripe {self.stripe_call_budget_seconds}s)"
            )
        return self

    @property
    def stripe_call_budget_seconds(self) -> float:
        """Worst case for one retried Stripe operation: every attempt times out."""
        backoff = sum(
            min(2**attempt, STRIPE_BACKOFF_MAX_SECONDS)
            for attempt in range(STRIPE_MAX_ATTEMPTS - 1)
        )
        return STRIPE_MAX_ATTEMPTS * self.stripe_timeout_seconds + backoff

    @property
    def tick_budget_seconds(self) -> float:
        """A tick makes one delivery call, then one capture or one cancel."""
        return self.delivery_timeout_seconds + self.stripe_call_budget_seconds

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
