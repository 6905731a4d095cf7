from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a signing secret persisted under SHARED_FS_ROOT, creating it once.

    Tokens must survive restarts, so a generated secret is written with 0600
    permissions via an atomic rename.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g. in a container)
        pass
    except OSError as exc:
        logger.warning(
            "jwt_secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: Optional[str] = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_ACCESS_SECRET/JWT_REFRESH_SECRET "
            "or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and .env."""

    database_url: str = env_field("postgresql://localhost:5432/authcore", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    db_pool_timeout_seconds: float = env_field(5.0, "DB_POOL_TIMEOUT_SECONDS", gt=0)
    db_connect_timeout_seconds: int = env_field(5, "DB_CONNECT_TIMEOUT_SECONDS", ge=1)
    db_statement_timeout_ms: int = env_field(5000, "DB_STATEMENT_TIMEOUT_MS", ge=1)
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime resets and cache fallback.",
    )

    # Token signing
    jwt_access_secret: Optional[str] = env_field(
        None, "JWT_ACCESS_SECRET", validate_default=True
    )
    jwt_refresh_secret: Optional[str] = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    second_factor_token_ttl_minutes: int = env_field(
        5, "SECOND_FACTOR_TOKEN_TTL_MINUTES", ge=1
    )

    # Sessions
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS", ge=1)
    remember_me_ttl_days: int = env_field(30, "REMEMBER_ME_TTL_DAYS", ge=1)
    max_sessions_per_account: int = env_field(10, "MAX_SESSIONS_PER_ACCOUNT", ge=1)
    session_retention_days: int = env_field(
        90,
        "SESSION_RETENTION_DAYS",
        description="Ended sessions older than this are purged by the background sweeper",
    )
    session_sweep_interval_seconds: int = env_field(3600, "SESSION_SWEEP_INTERVAL_SECONDS")

    # Second factor
    totp_issuer: str = env_field("AuthCore", "TOTP_ISSUER")
    totp_window: int = env_field(2, "TOTP_WINDOW", ge=0, le=10)
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT", ge=1, le=50)
    mfa_encryption_key: Optional[str] = env_field(None, "MFA_SECRET_KEY")
    second_factor_max_attempts: int = env_field(5, "SECOND_FACTOR_MAX_ATTEMPTS", ge=1)
    second_factor_lockout_seconds: int = env_field(300, "SECOND_FACTOR_LOCKOUT_SECONDS", ge=1)

    # Cache behaviour
    cache_timeout_seconds: float = env_field(1.0, "CACHE_TIMEOUT_SECONDS", gt=0)
    revocation_fail_open: bool = env_field(
        False,
        "REVOCATION_FAIL_OPEN",
        description="Treat unknown revocation status as not revoked when the cache is down",
    )

    suspicious_window_hours: int = env_field(24, "SUSPICIOUS_WINDOW_HOURS", ge=1)
    email_verification_ttl_minutes: int = env_field(30, "EMAIL_VERIFICATION_TTL_MINUTES", ge=1)
    event_delivery_max_attempts: int = env_field(3, "EVENT_DELIVERY_MAX_ATTEMPTS", ge=1)

    # Rate limits (requests per minute, shared token bucket)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")
    second_factor_rate_limit_per_minute: int = env_field(
        10, "SECOND_FACTOR_RATE_LIMIT_PER_MINUTE"
    )

    # Email delivery
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthCore", "EMAIL_FROM_NAME")

    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("jwt_access_secret")
    @classmethod
    def _ensure_access_secret(cls, value: Optional[str]) -> str:
        return value or _load_or_create_secret(".jwt_access_secret")

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _ensure_refresh_secret(cls, value: Optional[str]) -> str:
        return value or _load_or_create_secret(".jwt_refresh_secret")

    @model_validator(mode="after")
    def _validate_signing_secrets(self) -> "Settings":
        for label, secret in (
            ("JWT_ACCESS_SECRET", self.jwt_access_secret),
            ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
        ):
            if len(secret or "") < _MIN_SECRET_LENGTH:
                raise ValueError(f"{label} must be at least {_MIN_SECRET_LENGTH} characters")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        if self.remember_me_ttl_days < self.session_ttl_days:
            raise ValueError("REMEMBER_ME_TTL_DAYS must not be shorter than SESSION_TTL_DAYS")
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
