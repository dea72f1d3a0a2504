from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from schoolauth.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


class TenantStrategy(str, Enum):
    """Where the tenant identifier of an inbound request is read from."""

    HEADER = "header"
    SUBDOMAIN = "subdomain"
    HYBRID = "hybrid"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/schoolauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, in-memory fallbacks).",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("schoolauth", "JWT_ISSUER")
    jwt_audience: str = env_field("schoolauth-clients", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(
        0,
        "JWT_CLOCK_SKEW_SECONDS",
        ge=0,
        description="Leeway applied to token expiry checks for clock drift between nodes",
    )
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )

    max_login_attempts: int = env_field(
        5,
        "MAX_LOGIN_ATTEMPTS",
        gt=0,
        description="Consecutive failed logins that lock an account",
    )
    lockout_duration_minutes: int = env_field(
        30, "LOCKOUT_DURATION_MINUTES", gt=0
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    tenant_strategy: TenantStrategy = env_field(
        TenantStrategy.HEADER, "TENANT_STRATEGY"
    )
    require_registered_tenant: bool = env_field(
        True,
        "REQUIRE_REGISTERED_TENANT",
        description="Reject tenant ids missing from the tenant registry",
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("School Management", "EMAIL_FROM_NAME")
    email_workers: int = env_field(2, "EMAIL_WORKERS", gt=0)
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from the process environment, then from ./.env."""
        sources = (os.environ, dotenv_values(".env"))
        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra
            key = extra.get("env", name.upper()) if isinstance(extra, dict) else name.upper()
            found = next((source[key] for source in sources if key in source), None)
            if found is not None:
                values[name] = found
        return cls(**values)

    @field_validator("tenant_strategy", mode="before")
    @classmethod
    def _validate_tenant_strategy(cls, value: Any) -> TenantStrategy:
        if isinstance(value, str):
            value = value.strip().lower()
        return TenantStrategy(value)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < _MIN_JWT_SECRET_LENGTH:
            logger.error("jwt_secret_too_short", length=len(value))
            raise ValueError(
                f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
            )
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Forget the cached Settings; the next get_settings() re-reads the environment."""
    global _settings_cache
    _settings_cache = None
