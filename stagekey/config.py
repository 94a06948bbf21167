from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stagekey.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return [str(item).strip() for item in items if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the access-control core."""

    state_dir: str | None = env_field(
        None,
        "STAGEKEY_STATE_DIR",
        description="Directory for the JSON state file; unset keeps state in memory only",
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Redis URL for shared rate-limit windows",
    )
    allow_redis_fallback: bool = env_field(
        True,
        "ALLOW_REDIS_FALLBACK",
        description="Use in-process rate-limit windows when Redis is unreachable",
    )

    # Rate limits
    actor_rate_limit: int = env_field(10, "ACTOR_RATE_LIMIT")
    actor_rate_window_seconds: int = env_field(60, "ACTOR_RATE_WINDOW_SECONDS")
    destination_rate_limit: int = env_field(3, "DESTINATION_RATE_LIMIT")
    destination_rate_window_seconds: int = env_field(
        60, "DESTINATION_RATE_WINDOW_SECONDS"
    )

    session_ttl_minutes: int = env_field(
        0,
        "SESSION_TTL_MINUTES",
        description="Session lifetime in minutes; 0 keeps sessions until logout or invalidation",
    )

    # Administrator notification fan-out for new token requests
    admin_emails: List[str] = env_field([], "ADMIN_EMAILS")
    admin_phones: List[str] = env_field([], "ADMIN_PHONES")
    default_country_code: str = env_field("1", "DEFAULT_COUNTRY_CODE")

    # Delivery behaviour
    delivery_timeout_seconds: float = env_field(10.0, "DELIVERY_TIMEOUT_SECONDS")
    delivery_max_attempts: int = env_field(3, "DELIVERY_MAX_ATTEMPTS")
    delivery_retry_base_seconds: float = env_field(1.0, "DELIVERY_RETRY_BASE_SECONDS")

    # Email (SMTP)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Stage Access", "EMAIL_FROM_NAME")

    # SMS (Twilio-compatible REST API)
    sms_api_base_url: str = env_field(
        "https://api.twilio.com/2010-04-01", "SMS_API_BASE_URL"
    )
    sms_account_sid: str | None = env_field(None, "SMS_ACCOUNT_SID")
    sms_auth_token: str | None = env_field(None, "SMS_AUTH_TOKEN")
    sms_from_number: str | None = env_field(None, "SMS_FROM_NUMBER")

    # Logging
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

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

    @field_validator("admin_emails", "admin_phones", mode="before")
    @classmethod
    def _split_destinations(cls, value: Any) -> List[str]:
        return _split_csv(value)

    @model_validator(mode="after")
    def _normalize_admin_phones(self) -> "Settings":
        from stagekey.service.phone import normalize_phone

        normalized = []
        for raw in self.admin_phones:
            phone = normalize_phone(raw, self.default_country_code)
            if phone is None:
                logger.warning("admin_phone_invalid", phone=raw)
                continue
            normalized.append(phone)
        self.admin_phones = normalized
        return self

    @field_validator(
        "actor_rate_limit",
        "actor_rate_window_seconds",
        "destination_rate_limit",
        "destination_rate_window_seconds",
        "delivery_max_attempts",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("session_ttl_minutes")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("delivery_timeout_seconds")
    @classmethod
    def _ensure_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("delivery timeout must be positive")
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
