from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from kleroteria.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/kleroteria", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for the memory store JSON snapshot; unset keeps state in-process only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, relaxed cookies)",
    )

    # Sessions
    session_ttl_minutes_long: int = env_field(
        60 * 24 * 7,
        "SESSION_TTL_MINUTES_LONG",
        description="Session TTL for sign-up and remember-me sign-in",
    )
    session_ttl_minutes_short: int = env_field(
        60 * 24,
        "SESSION_TTL_MINUTES_SHORT",
        description="Session TTL for ordinary sign-in",
    )
    session_cookie_name: str = env_field("sessionToken", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Verification codes
    verification_code_ttl_minutes: int = env_field(10, "VERIFICATION_CODE_TTL_MINUTES")
    verification_code_max_attempts: int = env_field(
        5,
        "VERIFICATION_CODE_MAX_ATTEMPTS",
        description="Fresh codes tried when a generated code collides with an existing one",
    )

    # Passwords
    password_min_length: int = env_field(6, "PASSWORD_MIN_LENGTH")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Kleroteria", "EMAIL_FROM_NAME")

    # SMS delivery (Twilio-compatible Messages API)
    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_account_sid: str | None = env_field(None, "SMS_ACCOUNT_SID")
    sms_auth_token: str | None = env_field(None, "SMS_AUTH_TOKEN")
    sms_from_number: str | None = env_field(None, "SMS_FROM_NUMBER")

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
        "session_ttl_minutes_long",
        "session_ttl_minutes_short",
        "verification_code_ttl_minutes",
        "verification_code_max_attempts",
        "password_min_length",
        "argon2_time_cost",
        "argon2_parallelism",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if int(value) < 1:
            raise ValueError("value must be a positive integer")
        return int(value)

    @field_validator("argon2_memory_cost")
    @classmethod
    def _ensure_memory_cost(cls, value: int) -> int:
        # argon2 requires at least 8 KiB per lane
        if int(value) < 8:
            raise ValueError("argon2 memory cost must be at least 8 KiB")
        return int(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
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
