from __future__ import annotations

import os
from enum import Enum
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from coris.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments; production flips cookie defaults to Secure."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration, built once at startup and passed down explicitly."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/coris", "DATABASE_URL")
    redis_url: Optional[str] = env_field(
        None,
        "REDIS_URL",
        description="Optional; rate limits fall back to in-process buckets when unset",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Session / CSRF
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET", validate_default=True)
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS", ge=1)
    cookie_secure: Optional[bool] = env_field(
        None,
        "COOKIE_SECURE",
        description="Secure cookie attribute; defaults to true when APP_ENV=production",
    )
    cookie_domain: str = env_field(
        "", "COOKIE_DOMAIN", description="Cookie Domain attribute; empty means host-only"
    )
    csrf_enabled: bool = env_field(
        True,
        "CSRF_ENABLED",
        description="Escape hatch for non-browser clients; disables the double-submit check",
    )
    store_timeout_seconds: float = env_field(
        3.0,
        "STORE_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound on the auth_version lookup during session verification",
    )

    # Password reset
    reset_token_ttl_minutes: int = env_field(30, "RESET_TOKEN_TTL_MINUTES", ge=1)
    app_public_url: str = env_field("http://localhost:5173", "APP_PUBLIC_URL")

    # Email
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASS")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    smtp_from: str = env_field("CORIS <no-reply@coris.local>", "SMTP_FROM")

    # CORS
    cors_allow_all: bool = env_field(False, "CORS_ALLOW_ALL")
    cors_allowed_origins: str = env_field("", "CORS_ALLOWED_ORIGINS")

    # Rate limits
    global_rate_limit_per_minute: int = env_field(300, "GLOBAL_RATE_LIMIT_PER_MINUTE")
    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(20, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_request_rate_limit_per_hour: int = env_field(
        10, "RESET_REQUEST_RATE_LIMIT_PER_HOUR"
    )
    reset_confirm_rate_limit_per_hour: int = env_field(
        20, "RESET_CONFIRM_RATE_LIMIT_PER_HOUR"
    )

    # Reminder job
    reminder_batch_size: int = env_field(50, "REMINDER_BATCH_SIZE", ge=1)

    # Stored function names; the SQL side owns their semantics
    db_fn_generate_windows_for_schedule: str = env_field(
        "coris_generate_paycheck_windows_for_schedule",
        "DB_FN_GENERATE_WINDOWS_FOR_SCHEDULE",
    )
    db_fn_assign_occurrences_to_active_windows: str = env_field(
        "coris_assign_occurrences_to_active_windows",
        "DB_FN_ASSIGN_OCCURRENCES_TO_ACTIVE_WINDOWS",
    )
    db_fn_generate_occurrences_for_user: str = env_field(
        "coris_generate_bill_occurrences_for_user",
        "DB_FN_GENERATE_OCCURRENCES_FOR_USER",
    )
    db_fn_generate_default_reminders_for_user: str = env_field(
        "coris_generate_default_reminders_for_user",
        "DB_FN_GENERATE_DEFAULT_REMINDERS_FOR_USER",
    )
    db_fn_cancel_unsent_reminders_for_occurrence: str = env_field(
        "coris_cancel_unsent_reminders_for_occurrence",
        "DB_FN_CANCEL_UNSENT_REMINDERS_FOR_OCCURRENCE",
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

    @field_validator("app_env")
    @classmethod
    def _validate_app_env(cls, value: AppEnv) -> AppEnv:
        return AppEnv(value)

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: Optional[str]) -> str:
        if not value or not value.strip():
            raise ValueError("JWT_SECRET must be set")
        return value

    @field_validator("cookie_domain", "cors_allowed_origins")
    @classmethod
    def _strip(cls, value: str) -> str:
        return (value or "").strip()

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()

    @model_validator(mode="after")
    def _default_cookie_secure(self) -> "Settings":
        if self.cookie_secure is None:
            self.cookie_secure = self.app_env == AppEnv.PRODUCTION
        return self

    @property
    def allowed_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]


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
