from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authguard.logging import get_logger

logger = get_logger(__name__)


class MFAMethod(str, Enum):
    """Second-factor delivery mechanisms."""

    EMAIL = "email"
    TOTP = "totp"
    HTTP = "http"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication layer."""

    # Sessions
    session_ttl_minutes: int = env_field(
        30, "SESSION_TTL_MINUTES", description="Lifetime of a new session in minutes"
    )
    # Login rate limiting (token bucket keyed by client identity/IP)
    login_rate_per_minute: float = env_field(
        1.0,
        "LOGIN_RATE_PER_MINUTE",
        description="Sustained login attempts per minute per client key",
    )
    login_burst: int = env_field(
        5, "LOGIN_BURST", description="Bucket capacity: burst of login attempts allowed"
    )
    limiter_idle_expiry_seconds: int = env_field(
        15 * 60,
        "LIMITER_IDLE_EXPIRY_SECONDS",
        description="Drop per-key limiter state untouched for this long",
    )
    failure_window_minutes: int = env_field(
        15,
        "FAILURE_WINDOW_MINUTES",
        description="Window after which a failed-login counter starts over",
    )
    maintenance_interval_seconds: int = env_field(
        60, "MAINTENANCE_INTERVAL_SECONDS", description="Background sweep interval"
    )
    # Password reset
    reset_token_ttl_minutes: int = env_field(15, "RESET_TOKEN_TTL_MINUTES")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    # MFA: "email", "totp" or "http"
    mfa_method: MFAMethod = env_field(MFAMethod.EMAIL, "MFA_METHOD")
    mfa_timeout_seconds: float = env_field(
        10.0,
        "MFA_TIMEOUT_SECONDS",
        description="Deadline applied around provider dispatch/validation calls",
    )
    mfa_code_ttl_seconds: int = env_field(300, "MFA_CODE_TTL_SECONDS")
    mfa_max_attempts: int = env_field(
        5, "MFA_MAX_ATTEMPTS", description="Failed MFA checks before a lockout"
    )
    mfa_attempt_window_minutes: int = env_field(5, "MFA_ATTEMPT_WINDOW_MINUTES")
    mfa_lockout_minutes: int = env_field(5, "MFA_LOCKOUT_MINUTES")
    mfa_provider_url: str | None = env_field(None, "MFA_PROVIDER_URL")
    mfa_provider_api_key: str | None = env_field(None, "MFA_PROVIDER_API_KEY")
    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_number: bool = env_field(True, "PASSWORD_REQUIRE_NUMBER")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")
    # Symmetric encryption for sensitive fields
    encryption_key: str | None = env_field(None, "ENCRYPTION_KEY")
    # Email delivery for MFA codes
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("authguard", "EMAIL_FROM_NAME")

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
        "session_ttl_minutes",
        "login_burst",
        "limiter_idle_expiry_seconds",
        "failure_window_minutes",
        "maintenance_interval_seconds",
        "reset_token_ttl_minutes",
        "mfa_code_ttl_seconds",
        "mfa_max_attempts",
        "mfa_attempt_window_minutes",
        "mfa_lockout_minutes",
        "password_min_length",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("login_rate_per_minute", "mfa_timeout_seconds")
    @classmethod
    def _positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("mfa_method")
    @classmethod
    def _validate_mfa_method(cls, value: MFAMethod) -> MFAMethod:
        return MFAMethod(value)

    @model_validator(mode="after")
    def _http_mfa_needs_url(self) -> "Settings":
        if self.mfa_method == MFAMethod.HTTP and not self.mfa_provider_url:
            raise ValueError("MFA_PROVIDER_URL is required when MFA_METHOD=http")
        return self

    @property
    def login_rate_per_second(self) -> float:
        return self.login_rate_per_minute / 60.0


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug("settings_loaded")
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
