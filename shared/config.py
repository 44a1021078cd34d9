"""
Shared configuration management for the metered usage gateway.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEV_PLACEHOLDER_SECRET = "dev-only-usage-auth-secret-change-me-0000"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: Optional[str] = Field(default=None)
    settlement_url: Optional[str] = Field(default=None)


class GatewayConfig(BaseConfig):
    """Gateway-specific configuration."""

    service_name: str = "gateway"
    host: str = "0.0.0.0"
    port: int = 8080

    # Security
    usage_auth_secret: str = Field(default=DEV_PLACEHOLDER_SECRET)
    security_mode: Literal["production", "development"] = Field(default="production")
    allow_unsigned_proofs: bool = Field(default=True)
    allow_legacy_credentials: bool = Field(default=True)
    max_clock_skew_seconds: int = Field(default=60)
    jti_ttl_seconds: int = Field(default=120)

    # Credentials and quotes
    credential_ttl_seconds: int = Field(default=3600)
    quote_ttl_ms: int = Field(default=60_000)

    # Positive auth cache
    auth_cache_ttl_seconds: float = Field(default=5.0)
    auth_cache_max_entries: int = Field(default=1000)

    # Receipt queue
    queue_key: str = Field(default="gateway:queue")
    drain_shutdown_timeout: float = Field(default=10.0)

    @property
    def is_production(self) -> bool:
        return self.security_mode == "production"


def get_config(**overrides) -> GatewayConfig:
    """Get gateway configuration, applying keyword overrides on top of the environment."""
    return GatewayConfig(**overrides)
