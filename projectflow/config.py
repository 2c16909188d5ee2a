from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from projectflow.logging import get_logger

logger = get_logger(__name__)

# Authorization codes never outlive this many seconds
MAX_AUTHORIZATION_CODE_TTL_SECONDS = 600

DEFAULT_SCOPES = (
    "projects:read",
    "projects:write",
    "tasks:read",
    "tasks:write",
    "mcp:tools",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authorization gateway."""

    app_base_url: str = env_field(
        "http://localhost:8000",
        "APP_BASE_URL",
        description="Public base URL; used as OAuth issuer and resource prefix",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/projectflow", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic behaviors for CI/smoke tests",
    )
    allow_redis_fallback_dev: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Allow running without Redis outside tests; denylist and rate limits become per-process",
    )

    # Upstream identity provider
    identity_jwt_secret: str | None = env_field(None, "IDENTITY_JWT_SECRET")
    identity_jwt_issuer: str | None = env_field(None, "IDENTITY_JWT_ISSUER")
    identity_jwt_audience: str = env_field("authenticated", "IDENTITY_JWT_AUDIENCE")
    identity_jwt_leeway_seconds: int = env_field(
        0,
        "IDENTITY_JWT_LEEWAY_SECONDS",
        ge=0,
        le=300,
        description="Clock skew tolerated on identity token expiry",
    )
    identity_cookie_name: str = env_field("pf_identity", "IDENTITY_COOKIE_NAME")
    login_url: str | None = env_field(None, "LOGIN_URL")

    # Token and flow lifetimes
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS", ge=60)
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    authorization_code_ttl_seconds: int = env_field(
        MAX_AUTHORIZATION_CODE_TTL_SECONDS,
        "AUTHORIZATION_CODE_TTL_SECONDS",
        ge=30,
        le=MAX_AUTHORIZATION_CODE_TTL_SECONDS,
    )
    pending_request_ttl_seconds: int = env_field(600, "PENDING_REQUEST_TTL_SECONDS", ge=60)
    token_retention_days: int = env_field(
        7,
        "TOKEN_RETENTION_DAYS",
        ge=0,
        description="Days expired or revoked token rows are kept before the sweep deletes them",
    )
    sweep_interval_seconds: int = env_field(300, "SWEEP_INTERVAL_SECONDS", ge=10)

    default_scope: str = env_field(" ".join(DEFAULT_SCOPES), "DEFAULT_SCOPE")
    supported_scopes: list[str] = env_field(
        list(DEFAULT_SCOPES) + ["sessions:read", "sessions:write"],
        "SUPPORTED_SCOPES",
    )
    token_rate_limit_per_minute: int = env_field(60, "TOKEN_RATE_LIMIT_PER_MINUTE", ge=0)
    authorize_rate_limit_per_minute: int = env_field(
        30, "AUTHORIZE_RATE_LIMIT_PER_MINUTE", ge=0
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("cors_allow_origins", "supported_scopes", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.replace(" ", ",").split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_identity_secret(self) -> "Settings":
        if self.identity_jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError(
                "IDENTITY_JWT_SECRET is required to verify identity provider tokens"
            )
        self.identity_jwt_secret = secrets.token_urlsafe(48)
        logger.warning("identity_secret_generated_for_test_mode")
        return self

    @property
    def issuer(self) -> str:
        return self.app_base_url

    @property
    def resource_audience(self) -> str:
        """Audience bound into every OAuth token this service issues."""
        return f"{self.app_base_url}/rpc"

    @property
    def resolved_login_url(self) -> str:
        return self.login_url or f"{self.app_base_url}/login"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
