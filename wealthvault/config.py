from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from wealthvault.logging import get_logger
from wealthvault.service.errors import ConfigurationError

logger = get_logger(__name__)

# Signing secrets shorter than this are refused at startup
DEFAULT_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session-security core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/wealthvault", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_root: str = env_field("/srv/wealthvault", "STATE_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_cache_fallback: bool = env_field(
        True,
        "ALLOW_CACHE_FALLBACK",
        description="Run with store-only blacklist lookups when Redis is unreachable at startup",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the synchronous Redis client and relaxed startup checks",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("wealthvault", "JWT_ISSUER")
    jwt_audience: str = env_field("wealthvault-clients", "JWT_AUDIENCE")
    min_secret_length: int = env_field(DEFAULT_MIN_SECRET_LENGTH, "MIN_SECRET_LENGTH")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    session_ttl_days: int = env_field(
        30,
        "SESSION_TTL_DAYS",
        description="Device session lifetime; longer than the refresh token to allow rolling renewal",
    )
    session_retention_days: int = env_field(
        90,
        "SESSION_RETENTION_DAYS",
        description="How long inactive session rows are kept for audit before pruning",
    )

    # MFA
    mfa_issuer: str = env_field("Wealth-Vault", "MFA_ISSUER")
    mfa_recovery_code_count: int = env_field(10, "MFA_RECOVERY_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    totp_skew_steps: int = env_field(1, "TOTP_SKEW_STEPS")

    # Suspicious-login heuristics
    brute_force_threshold: int = env_field(5, "BRUTE_FORCE_THRESHOLD")
    brute_force_window_minutes: int = env_field(60, "BRUTE_FORCE_WINDOW_MINUTES")
    impossible_travel_window_minutes: int = env_field(
        60, "IMPOSSIBLE_TRAVEL_WINDOW_MINUTES"
    )
    known_device_history: int = env_field(10, "KNOWN_DEVICE_HISTORY")
    geoip_enabled: bool = env_field(False, "GEOIP_ENABLED")
    geoip_url: str = env_field("http://ip-api.com/json", "GEOIP_URL")

    # I/O budgets
    store_timeout_seconds: float = env_field(3.0, "STORE_TIMEOUT_SECONDS")
    cache_timeout_seconds: float = env_field(1.0, "CACHE_TIMEOUT_SECONDS")
    cache_health_interval_seconds: float = env_field(
        5.0, "CACHE_HEALTH_INTERVAL_SECONDS"
    )

    # Maintenance
    sweep_interval_seconds: int = env_field(900, "SWEEP_INTERVAL_SECONDS")
    notification_batch_size: int = env_field(100, "NOTIFICATION_BATCH_SIZE")
    notification_max_attempts: int = env_field(5, "NOTIFICATION_MAX_ATTEMPTS")

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
        "mfa_recovery_code_count",
        "brute_force_threshold",
        "known_device_history",
        "notification_max_attempts",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("totp_skew_steps")
    @classmethod
    def _skew_bounds(cls, value: int) -> int:
        if value < 0 or value > 2:
            raise ValueError("totp_skew_steps must be between 0 and 2")
        return value

    def require_signing_secret(self) -> str:
        """Return the signing secret or fail the startup.

        Raises:
            ConfigurationError: secret absent or below ``min_secret_length``.
        """
        secret = self.jwt_secret
        if not secret:
            logger.error("jwt_secret_missing")
            raise ConfigurationError("JWT_SECRET is not set")
        if len(secret) < self.min_secret_length:
            logger.error(
                "jwt_secret_too_short",
                length=len(secret),
                minimum=self.min_secret_length,
            )
            raise ConfigurationError(
                f"JWT_SECRET must be at least {self.min_secret_length} characters long"
            )
        return secret


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
