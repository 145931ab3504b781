"""Application configuration schema and validation."""

from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret API key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Signing secret shared with the Stripe webhook endpoint",
    )
    default_currency: str = Field(
        default="usd",
        min_length=3,
        max_length=3,
        description="ISO currency code for new tiers and one-off payments",
    )
    checkout_success_url: str = Field(
        default="http://localhost:3000/subscription/success?session_id={CHECKOUT_SESSION_ID}",
        description="Redirect target after a completed checkout",
    )
    checkout_cancel_url: str = Field(
        default="http://localhost:3000/subscription/cancelled",
        description="Redirect target after an abandoned checkout",
    )
    subscriptions_url: str = Field(
        default="http://localhost:3000/subscriptions",
        description="Redirect target when the subscriber already has a live subscription",
    )
    checkout_session_ttl_minutes: int = Field(
        default=60,
        ge=30,
        le=1440,
        description="Lifetime of a Stripe Checkout Session before it expires",
    )
    past_due_grace_hours: int = Field(
        default=72,
        ge=0,
        le=720,
        description="Hours a past-due subscription keeps access after a failed payment",
    )
    server_host: str = Field(
        default="0.0.0.0",
        description="Bind address for the HTTP server",
    )
    server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for the HTTP server",
    )
    auth_user_header: str = Field(
        default="X-User-Id",
        description="Header carrying the authenticated user id set by the gateway",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Stripe expects lowercase ISO currency codes."""
        return v.lower()


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the cached AppConfig instance for entry points."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
