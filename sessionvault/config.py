from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionvault.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionvault", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE", ge=1)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    test_mode: bool = env_field(False, "TEST_MODE")

    # Token signing. Access and refresh tokens never share a secret.
    access_token_secret: str = env_field(None, "ACCESS_TOKEN_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(None, "REFRESH_TOKEN_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionvault", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime in minutes",
        gt=0,
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime in minutes",
        gt=0,
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)

    # Password hashing (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost_kib: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST_KIB", ge=8
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    password_hash_workers: int = env_field(
        4,
        "PASSWORD_HASH_WORKERS",
        description="Threads reserved for password hashing and verification",
        ge=1,
    )

    # Google identity federation
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_certs_url: str = env_field(
        "https://www.googleapis.com/oauth2/v3/certs", "GOOGLE_CERTS_URL"
    )
    google_keys_max_cache_seconds: int = env_field(
        3600,
        "GOOGLE_KEYS_MAX_CACHE_SECONDS",
        description="Upper bound on how long fetched signing keys are trusted",
        ge=0,
    )
    google_keys_timeout_seconds: float = env_field(5.0, "GOOGLE_KEYS_TIMEOUT_SECONDS", gt=0)
    google_keys_fetch_attempts: int = env_field(3, "GOOGLE_KEYS_FETCH_ATTEMPTS", ge=1)

    default_device_label: str = env_field("Unknown Device", "DEFAULT_DEVICE_LABEL")
    revoke_sessions_on_refresh_reuse: bool = env_field(
        False,
        "REVOKE_SESSIONS_ON_REFRESH_REUSE",
        description="Revoke every refresh token of a user when reuse of one is detected",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("access_token_secret", "refresh_token_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        logger.warning(
            "token_secret_generated",
            field=info.field_name,
            message="secret not configured; issued tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh tokens must use different secrets")
        if self.db_pool_min_size > self.db_pool_max_size:
            raise ValueError("DB_POOL_MIN_SIZE cannot exceed DB_POOL_MAX_SIZE")
        return self


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
