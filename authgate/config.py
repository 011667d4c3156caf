from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AuditSinkKind(str, Enum):
    """Where audit events are handed off to."""

    LOG = "log"
    HTTP = "http"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks.",
    )

    # Signing keys
    jwt_private_key: str | None = env_field(
        None, "JWT_PRIVATE_KEY", description="PEM-encoded RSA private key"
    )
    jwt_private_key_path: str | None = env_field(None, "JWT_PRIVATE_KEY_PATH")
    jwt_public_key: str | None = env_field(
        None, "JWT_PUBLIC_KEY", description="PEM-encoded RSA public key"
    )
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    jwt_issuer: str = env_field("authgate", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")

    # Sessions & MFA
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")
    mfa_challenge_ttl_seconds: int = env_field(300, "MFA_CHALLENGE_TTL_SECONDS")
    mfa_issuer: str = env_field(
        "BankingApp", "MFA_ISSUER", description="Issuer label shown in authenticator apps"
    )
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting MFA secrets at rest",
    )

    # Lockout
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")

    # Rate limits
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    default_rate_limit_per_second: int = env_field(50, "DEFAULT_RATE_LIMIT_PER_SECOND")

    # Audit hand-off
    audit_sink: AuditSinkKind = env_field(AuditSinkKind.LOG, "AUDIT_SINK")
    audit_sink_url: str | None = env_field(None, "AUDIT_SINK_URL")
    audit_sink_timeout_seconds: float = env_field(5.0, "AUDIT_SINK_TIMEOUT_SECONDS")

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

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "session_ttl_days",
        "mfa_challenge_ttl_seconds",
        "max_failed_login_attempts",
        "login_rate_limit_per_minute",
        "register_rate_limit_per_minute",
        "default_rate_limit_per_second",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if int(value) <= 0:
            raise ValueError("must be a positive integer")
        return int(value)

    @field_validator("audit_sink")
    @classmethod
    def _validate_audit_sink(cls, value: AuditSinkKind) -> AuditSinkKind:
        return AuditSinkKind(value)

    @field_validator("redis_url", "jwt_private_key", "jwt_public_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _require_sink_url(self) -> "Settings":
        if self.audit_sink == AuditSinkKind.HTTP and not self.audit_sink_url:
            raise ValueError("AUDIT_SINK_URL is required when AUDIT_SINK=http")
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
