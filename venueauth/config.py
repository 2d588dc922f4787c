from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from venueauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the venue authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/venueauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/venueauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: synchronous Redis client, resettable runtime.",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("venueauth", "JWT_ISSUER")
    jwt_audience: str = env_field("venue-clients", "JWT_AUDIENCE")

    # Token and session lifetimes
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    sub_user_access_token_ttl_minutes: int = env_field(
        240,
        "SUB_USER_ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of venue-operational tokens issued to sub-users",
    )
    gateway_token_ttl_hours: int = env_field(
        24,
        "GATEWAY_TOKEN_TTL_HOURS",
        description="Lifetime of venue-gateway tokens issued by venue owner login",
    )
    session_idle_days: int = env_field(90, "SESSION_IDLE_DAYS")
    session_cleanup_interval_hours: int = env_field(24, "SESSION_CLEANUP_INTERVAL_HOURS")
    session_cleanup_enabled: bool = env_field(True, "SESSION_CLEANUP_ENABLED")

    # Verification codes
    verification_code_ttl_minutes: int = env_field(10, "VERIFICATION_CODE_TTL_MINUTES")
    verification_resend_block_minutes: int = env_field(
        8,
        "VERIFICATION_RESEND_BLOCK_MINUTES",
        description="A new account-verification code is refused while the outstanding one has more than this many minutes left",
    )
    password_reset_interval_seconds: int = env_field(60, "PASSWORD_RESET_INTERVAL_SECONDS")
    expose_verification_codes: bool = env_field(
        False,
        "EXPOSE_VERIFICATION_CODES",
        description="Echo freshly generated verification codes in registration responses (development only)",
    )

    # Sub-user lockout
    sub_user_max_failed_logins: int = env_field(5, "SUB_USER_MAX_FAILED_LOGINS")
    sub_user_lockout_minutes: int = env_field(30, "SUB_USER_LOCKOUT_MINUTES")

    # Rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")
    verification_rate_limit_per_minute: int = env_field(
        5, "VERIFICATION_RATE_LIMIT_PER_MINUTE"
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Venue Booking", "EMAIL_FROM_NAME")

    # SMS delivery (Twilio-compatible HTTP gateway)
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_account_sid: str | None = env_field(None, "SMS_ACCOUNT_SID")
    sms_auth_token: str | None = env_field(None, "SMS_AUTH_TOKEN")
    sms_from_number: str | None = env_field(None, "SMS_FROM_NUMBER")

    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: str = env_field(
        "http://localhost:3000,http://localhost:8000",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed CORS origins",
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "sub_user_access_token_ttl_minutes",
        "gateway_token_ttl_hours",
        "verification_code_ttl_minutes",
        "sub_user_max_failed_logins",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/venueauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup", error=str(exc), path=str(fs_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
