from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class LoginField(str, Enum):
    """User attribute used as the interactive login identity."""

    EMAIL = "email"
    HANDLE = "handle"


class TokenSweepMode(str, Enum):
    """Where expired persistent-login tokens are purged.

    - INLINE: every validation sweeps before checking the presented cookie
    - BACKGROUND: a periodic task started by the app lifespan sweeps
    """

    INLINE = "inline"
    BACKGROUND = "background"


class CredentialStoreBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


@dataclass(frozen=True)
class FeatureSet:
    """Optional authentication capabilities switched on for this deployment."""

    lockable: bool = True
    trackable: bool = True
    confirmable: bool = False
    rememberable: bool = True


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core and its storage."""

    database_url: str = env_field(
        "postgresql://localhost:5432/latchkey", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/latchkey", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other deterministic testing behaviors.",
    )

    # Capability switches
    lockable_enabled: bool = env_field(True, "LOCKABLE_ENABLED")
    trackable_enabled: bool = env_field(True, "TRACKABLE_ENABLED")
    confirmable_enabled: bool = env_field(False, "CONFIRMABLE_ENABLED")
    rememberable_enabled: bool = env_field(True, "REMEMBERABLE_ENABLED")

    max_failed_login_attempts: int = env_field(
        5,
        "MAX_FAILED_LOGIN_ATTEMPTS",
        description="Consecutive bad passwords that lock an account",
    )
    login_field: LoginField = env_field(LoginField.EMAIL, "LOGIN_FIELD")
    session_ttl_minutes: int = env_field(60 * 24, "SESSION_TTL_MINUTES")

    # Persistent login ("remember me") cookie
    login_cookie_name: str = env_field("latchkey_login", "LOGIN_COOKIE_NAME")
    rememberable_cookie_expire_hours: int = env_field(
        48,
        "REMEMBERABLE_COOKIE_EXPIRE_HOURS",
        description="Cookie lifetime; tokens not rotated within this window expire",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    token_sweep_mode: TokenSweepMode = env_field(
        TokenSweepMode.INLINE, "TOKEN_SWEEP_MODE"
    )
    token_sweep_interval_seconds: int = env_field(300, "TOKEN_SWEEP_INTERVAL_SECONDS")

    credential_store_backend: CredentialStoreBackend = env_field(
        CredentialStoreBackend.MEMORY, "CREDENTIAL_STORE_BACKEND"
    )
    credential_store_max_entries: int = env_field(
        10000, "CREDENTIAL_STORE_MAX_ENTRIES"
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

    @field_validator("login_field")
    @classmethod
    def _validate_login_field(cls, value: LoginField) -> LoginField:
        return LoginField(value)

    @field_validator("token_sweep_mode")
    @classmethod
    def _validate_sweep_mode(cls, value: TokenSweepMode) -> TokenSweepMode:
        return TokenSweepMode(value)

    @field_validator("credential_store_backend")
    @classmethod
    def _validate_credential_backend(
        cls, value: CredentialStoreBackend
    ) -> CredentialStoreBackend:
        return CredentialStoreBackend(value)

    @field_validator("max_failed_login_attempts", "rememberable_cookie_expire_hours")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def login_cookie_max_age(self) -> int:
        return self.rememberable_cookie_expire_hours * 60 * 60

    def features(self) -> FeatureSet:
        return FeatureSet(
            lockable=self.lockable_enabled,
            trackable=self.trackable_enabled,
            confirmable=self.confirmable_enabled,
            rememberable=self.rememberable_enabled,
        )


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
