from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Environment(str, Enum):
    """Deployment environments recognised by the policy checks."""

    PRODUCTION = "production"
    DEVELOPMENT = "development"
    TEST = "test"


# Minimum HS256 key length accepted by the token issuer.
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Static settings for the identity and session core.

    Values come from the process environment first and a ``.env`` file
    second. A handful of policy knobs can additionally be overridden at
    runtime through the store's system settings table; see
    ``system_setting_defaults``.
    """

    environment: Environment = env_field(Environment.PRODUCTION, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/tenantgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tenantgate", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantgate-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        900,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Lifetime of signed access tokens",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Lifetime of persisted refresh tokens",
    )

    session_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TTL_MINUTES",
        description="Absolute session lifetime",
    )
    session_inactivity_timeout_minutes: int = env_field(
        30,
        "SESSION_INACTIVITY_TIMEOUT_MINUTES",
        description="Idle window after which a session is revoked on next check (overridable via system settings)",
    )

    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")

    password_reset_token_ttl_minutes: int = env_field(
        24 * 60, "PASSWORD_RESET_TOKEN_TTL_MINUTES"
    )
    password_reset_otp_ttl_minutes: int = env_field(10, "PASSWORD_RESET_OTP_TTL_MINUTES")
    account_recovery_token_ttl_minutes: int = env_field(
        60, "ACCOUNT_RECOVERY_TOKEN_TTL_MINUTES"
    )
    email_verification_token_ttl_minutes: int = env_field(
        24 * 60, "EMAIL_VERIFICATION_TOKEN_TTL_MINUTES"
    )

    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_require_numbers: bool = env_field(True, "PASSWORD_REQUIRE_NUMBERS")
    password_require_special: bool = env_field(False, "PASSWORD_REQUIRE_SPECIAL")
    password_history_count: int = env_field(
        5,
        "PASSWORD_HISTORY_COUNT",
        description="Number of previous passwords that may not be reused (overridable via system settings)",
    )
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    totp_issuer: str = env_field("TenantGate", "TOTP_ISSUER")
    totp_window: int = env_field(1, "TOTP_WINDOW")
    sms_code_ttl_minutes: int = env_field(5, "SMS_CODE_TTL_MINUTES")
    mfa_recovery_code_count: int = env_field(10, "MFA_RECOVERY_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Fernet key used to encrypt MFA secrets at rest in the memory store",
    )
    enforce_mfa_in_dev: bool = env_field(
        False,
        "ENFORCE_MFA_IN_DEV",
        description="Require MFA during account recovery outside production (overridable via system settings)",
    )

    invitation_ttl_days: int = env_field(7, "INVITATION_TTL_DAYS")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TenantGate", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")

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

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
            if value in {"dev", "local"}:
                return Environment.DEVELOPMENT
        return Environment(value)

    @field_validator("jwt_secret")
    @classmethod
    def _blank_secret_is_missing(cls, value: str | None) -> str | None:
        # an empty JWT_SECRET is treated as unset; the issuer refuses to sign
        if value is not None and not value.strip():
            return None
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION


def system_setting_defaults(settings: Settings) -> dict[str, Any]:
    """Policy values that stored system settings may override at runtime."""
    return {
        "enforce_mfa_in_dev": settings.enforce_mfa_in_dev,
        "password_history_count": settings.password_history_count,
        "global_session_timeout_minutes": settings.session_inactivity_timeout_minutes,
    }


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
