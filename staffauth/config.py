from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from staffauth.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/staffauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables runtime resets and the in-memory cache fallback for test runs.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("staffauth", "JWT_ISSUER")
    jwt_audience: str = env_field("staffauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    refresh_token_bytes: int = env_field(64, "REFRESH_TOKEN_BYTES")
    rotate_refresh_tokens: bool = env_field(
        True,
        "ROTATE_REFRESH_TOKENS",
        description="Revoke a refresh token on use and hand out a replacement.",
    )
    revoke_sessions_on_password_change: bool = env_field(
        True, "REVOKE_SESSIONS_ON_PASSWORD_CHANGE"
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")

    # Lockout and anomaly detection
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")
    suspicious_login_window_days: int = env_field(30, "SUSPICIOUS_LOGIN_WINDOW_DAYS")

    # Password policy and hashing
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_repeating: int = env_field(2, "PASSWORD_MAX_REPEATING")
    password_history_depth: int = env_field(5, "PASSWORD_HISTORY_DEPTH")
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Two-factor
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    totp_issuer: str = env_field("staffauth", "TOTP_ISSUER")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")

    # Background sweep of expired/revoked refresh tokens
    token_sweep_enabled: bool = env_field(True, "TOKEN_SWEEP_ENABLED")
    token_sweep_interval_seconds: int = env_field(
        24 * 60 * 60, "TOKEN_SWEEP_INTERVAL_SECONDS"
    )

    # Honour X-Forwarded-For / X-Real-IP when resolving the client address
    trust_proxy_headers: bool = env_field(True, "TRUST_PROXY_HEADERS")

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

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value:
            logger.error("jwt_secret_missing")
            raise ValueError("JWT_SECRET must be configured")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            logger.error("jwt_secret_too_short", length=len(value))
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("lockout_threshold", "lockout_duration_minutes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("lockout settings must be positive")
        return value


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
