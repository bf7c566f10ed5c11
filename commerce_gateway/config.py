"""Gateway settings loaded from the environment.

All settings are read once at startup by ``GatewaySettings.from_env()`` and
passed down explicitly; nothing below the composition root reads the
environment on its own.

Per-provider variables use the provider name as prefix, e.g.
``VEEQO_API_KEY``, ``VEEQO_RATE_LIMIT_CAPACITY``, ``EASYPOST_CACHE_TTL``.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from commerce_gateway.errors import ConfigurationError
from commerce_gateway.providers import PROFILES, ProviderProfile

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 30
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETENTION_SECONDS = 86400  # 24 hours
DEFAULT_MAX_BODY_BYTES = 1024 * 1024  # 1 MiB


class ProviderSettings(BaseModel):
    """Connection and limit settings for one provider."""

    name: str
    api_key: str = ""
    base_url: str
    rate_limit_capacity: int = Field(ge=1)
    rate_limit_refill: float = Field(gt=0)
    cache_ttl: int = Field(DEFAULT_CACHE_TTL, ge=0)

    @classmethod
    def from_env(cls, profile: ProviderProfile) -> "ProviderSettings":
        """Read ``<PROVIDER>_*`` variables, falling back to the profile defaults."""
        env = ProviderEnv(_env_prefix=f"{profile.name.upper()}_")
        return cls(
            name=profile.name,
            api_key=env.api_key,
            base_url=env.base_url or profile.default_base_url,
            rate_limit_capacity=env.rate_limit_capacity or profile.default_capacity,
            rate_limit_refill=env.rate_limit_refill or profile.default_refill_rate,
            cache_ttl=env.cache_ttl,
        )


class ProviderEnv(BaseSettings):
    """Raw per-provider variables; the prefix is supplied per instance."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_ignore_empty=True)

    api_key: str = ""
    base_url: str = ""
    rate_limit_capacity: int | None = Field(None, ge=1)
    rate_limit_refill: float | None = Field(None, gt=0)
    cache_ttl: int = Field(DEFAULT_CACHE_TTL, ge=0)


class GatewaySettings(BaseSettings):
    """Top-level settings for the whole gateway process."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_ignore_empty=True)

    providers: dict[str, ProviderSettings] = Field(default_factory=dict)
    request_timeout: float = Field(DEFAULT_TIMEOUT, ge=0)
    max_retry_attempts: int = Field(DEFAULT_MAX_ATTEMPTS, ge=1)
    retry_base_delay: float = Field(1.0, ge=0)
    retry_max_delay: float = Field(30.0, ge=0)
    webhook_secret: str = ""
    webhook_max_body_bytes: int = Field(DEFAULT_MAX_BODY_BYTES, ge=1)
    webhook_rate_limit: str = "600/minute"
    event_retention_seconds: int = Field(DEFAULT_RETENTION_SECONDS, ge=1)
    purge_interval_seconds: float = Field(300.0, ge=0)
    dispatch_queue_size: int = Field(1000, ge=1)
    redis_url: str | None = None
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        """Build settings from environment variables (and ``.env`` if present).

        Raises:
            ConfigurationError: If a variable fails validation.
        """
        try:
            providers = {name: ProviderSettings.from_env(profile) for name, profile in PROFILES.items()}
            settings = cls(providers=providers)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise ConfigurationError(
                f"Invalid gateway settings: {fields}",
                details={"errors": [err["msg"] for err in e.errors()]},
            ) from None
        if not settings.webhook_secret:
            logger.warning("WEBHOOK_SECRET not set, all inbound webhooks will be rejected")
        return settings
