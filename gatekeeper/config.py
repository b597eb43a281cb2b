from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeeper.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the digest size weaken the MAC
MIN_SECRET_LENGTH = 32


class StorageBackend(str, Enum):
    """Where live session ids are tracked."""

    NONE = "none"
    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance and session storage."""

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    session_ttl_minutes: int = env_field(
        60,
        "SESSION_TTL_MINUTES",
        description="Lifetime of tokens not flagged with a trusted source",
    )
    storage_backend: StorageBackend = env_field(
        StorageBackend.NONE,
        "STORAGE_BACKEND",
        description="none (stateless tokens), memory or redis",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Connect and command timeout for Redis, in seconds",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )

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

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_minutes * 60

    @field_validator("storage_backend", mode="before")
    @classmethod
    def _validate_storage_backend(cls, value: Any) -> StorageBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return StorageBackend(value)

    @field_validator("session_ttl_minutes")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("session_ttl_minutes must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"jwt_secret must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        # Tokens signed with a generated secret die with the process
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)


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
