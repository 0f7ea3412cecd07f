from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from orgauth.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class LeaderDepartmentPolicy(str, Enum):
    """How a LEADER is checked against a DEPARTMENT scope requirement.

    - UNRESTRICTED: leaders reach every department of their organization
    - ASSIGNED_BRANCHES: the department must sit under one of the leader's branches
    """

    UNRESTRICTED = "unrestricted"
    ASSIGNED_BRANCHES = "assigned_branches"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, sourced from env and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/orgauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviours: in-memory cache and generated secrets.",
    )
    app_port: int = env_field(3000, "PORT")
    log_level: str = env_field("INFO", "LOG_LEVEL")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    access_token_ttl_seconds: int = env_field(
        24 * 60 * 60, "ACCESS_TOKEN_TTL_SECONDS", ge=60
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)

    session_ttl_seconds: int = env_field(
        24 * 60 * 60, "SESSION_TTL_SECONDS", ge=60, le=24 * 60 * 60
    )
    max_sessions_per_user: int = env_field(3, "MAX_SESSIONS_PER_USER", ge=1)
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)
    password_history_size: int = env_field(5, "PASSWORD_HISTORY_SIZE", ge=0)
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", ge=1)

    # argon2id cost; defaults land around 100ms per verify on commodity hardware
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    leader_department_policy: LeaderDepartmentPolicy = env_field(
        LeaderDepartmentPolicy.UNRESTRICTED,
        "LEADER_DEPARTMENT_POLICY",
        description="unrestricted or assigned_branches",
    )
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Take the client IP from X-Forwarded-For (only behind a trusted proxy).",
    )
    cors_allow_origins: list[str] = env_field([], "ALLOWED_ORIGINS")

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

    @field_validator("leader_department_policy")
    @classmethod
    def _validate_leader_policy(cls, value: LeaderDepartmentPolicy) -> LeaderDepartmentPolicy:
        return LeaderDepartmentPolicy(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        if self.test_mode:
            # Ephemeral secrets keep tests self-contained; tokens die with the process
            if not self.jwt_secret:
                self.jwt_secret = secrets.token_urlsafe(48)
                logger.warning("jwt_secret_generated", scope="access")
            if not self.jwt_refresh_secret:
                self.jwt_refresh_secret = secrets.token_urlsafe(48)
                logger.warning("jwt_secret_generated", scope="refresh")
        for name in ("jwt_secret", "jwt_refresh_secret"):
            value = getattr(self, name)
            if not value:
                raise ValueError(f"{name.upper()} must be set")
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters"
                )
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
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
