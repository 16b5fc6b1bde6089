from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from portalauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and token authority."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0, "REDIS_SOCKET_TIMEOUT", description="Per-command Redis timeout in seconds"
    )
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep sessions and revocations in process instead of Redis",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("portalauth", "JWT_ISSUER")
    jwt_audience: str = env_field("portal", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60 * 24, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(60 * 24 * 30, "REFRESH_TOKEN_TTL_MINUTES")
    token_leeway_seconds: int = env_field(
        0, "TOKEN_LEEWAY_SECONDS", description="Clock skew tolerated on token expiry"
    )
    revoke_access_on_refresh: bool = env_field(
        True,
        "REVOKE_ACCESS_ON_REFRESH",
        description="Revoke the access token a refresh replaces",
    )

    session_ttl_seconds: int = env_field(30 * 24 * 60 * 60, "SESSION_TTL_SECONDS")
    terminated_session_ttl_seconds: int = env_field(
        60 * 60,
        "TERMINATED_SESSION_TTL_SECONDS",
        description="How long a terminated session record is kept for audit",
    )
    session_key_prefix: str = env_field("session:", "SESSION_KEY_PREFIX")
    user_sessions_key_prefix: str = env_field("user_sessions:", "USER_SESSIONS_KEY_PREFIX")
    blacklist_key_prefix: str = env_field("blacklist:", "BLACKLIST_KEY_PREFIX")

    cors_allow_origins: list[str] = env_field(["*"], "CORS_ALLOW_ORIGINS")

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

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_seconds",
        "terminated_session_ttl_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not (self.test_mode or self.use_memory_store):
            raise ValueError("JWT_SECRET must be set unless TEST_MODE or USE_MEMORY_STORE is on")
        # Tokens signed with this secret die with the process
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_generated", reason="unset_in_dev_mode")
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60


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
