"""Provisioning engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with PROVISIONING_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.provisioning/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Tenant hosts are "<subdomain>.<base_domain>"
    base_domain: str = "sites.example.com"

    # Template cloning
    clone_max_attempts: int = Field(default=5, ge=1)
    clone_backoff_base: float = Field(default=30.0, gt=0.0)
    clone_backoff_max: float = Field(default=1800.0, gt=0.0)
    rewrite_max_depth: int = Field(default=50, ge=1)
    # A running clone job untouched for this long is treated as abandoned.
    clone_lease_seconds: float = Field(default=1800.0, gt=0.0)

    # Domain lifecycle
    domain_max_retries: int = Field(default=6, ge=0)
    domain_max_polls: int = Field(default=288, ge=1)
    domain_poll_interval: float = Field(default=300.0, gt=0.0)
    domain_backoff_base: float = Field(default=60.0, gt=0.0)
    domain_backoff_max: float = Field(default=3600.0, gt=0.0)

    # Subscription enforcement
    billing_grace_days: int = Field(default=7, ge=0)
    cancellation_grace_days: int = Field(default=30, ge=0)
    sweep_interval_seconds: float = Field(default=300.0, gt=0.0)

    # Notifications
    notification_webhook_url: str | None = None
    notification_timeout: float = 5.0

    # Telemetry
    structured_logging: bool = False

    @field_validator("base_domain")
    @classmethod
    def _normalise_base_domain(cls, v: str) -> str:
        v = v.strip().strip(".").lower()
        if not v:
            raise ValueError("base_domain must not be empty")
        return v

    def tenant_host(self, subdomain: str) -> str:
        """Return the public hostname serving *subdomain*."""
        return f"{subdomain}.{self.base_domain}"

    def is_local(self) -> bool:
        return self.database_url.startswith("sqlite")


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
