from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.email import EmailService
from authcore.service.events import (
    AccountNotificationHandler,
    EventDispatcher,
    LoginAlertHandler,
    SecurityLogHandler,
)
from authcore.service.passwords import CredentialVerifier
from authcore.service.sessions import SessionStore
from authcore.service.tokens import TokenManager
from authcore.service.totp import SecondFactorService
from authcore.service.verification import VerificationCodes
from authcore.storage.errors import CacheUnavailable
from authcore.storage.memory import MemoryStore
from authcore.storage.memory_cache import MemoryCache
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SessionCache, bounded

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


def _build_cache(settings: Settings) -> SessionCache:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for the session cache, token revocation and rate limits; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; revocations, rate limits and "
            "second-factor lockouts are per-process only."
        ),
        mode=fallback_mode,
    )
    return MemoryCache()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                    pool_timeout=self.settings.db_pool_timeout_seconds,
                    connect_timeout=self.settings.db_connect_timeout_seconds,
                    statement_timeout_ms=self.settings.db_statement_timeout_ms,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = _build_cache(self.settings)
        cache_timeout = self.settings.cache_timeout_seconds

        self.tokens = TokenManager(
            access_secret=self.settings.jwt_access_secret,
            refresh_secret=self.settings.jwt_refresh_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl_seconds=self.settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=self.settings.session_ttl_days * 86400,
            second_factor_ttl_seconds=self.settings.second_factor_token_ttl_minutes * 60,
            cache=self.cache,
            cache_timeout=cache_timeout,
            revocation_fail_open=self.settings.revocation_fail_open,
        )
        self.sessions = SessionStore(
            self.store,
            self.cache,
            self.tokens,
            max_sessions=self.settings.max_sessions_per_account,
            session_ttl=timedelta(days=self.settings.session_ttl_days),
            remember_me_ttl=timedelta(days=self.settings.remember_me_ttl_days),
            cache_timeout=cache_timeout,
        )
        self.second_factor = SecondFactorService(
            self.store,
            self.cache,
            issuer=self.settings.totp_issuer,
            window=self.settings.totp_window,
            backup_code_count=self.settings.backup_code_count,
            max_attempts=self.settings.second_factor_max_attempts,
            lockout_seconds=self.settings.second_factor_lockout_seconds,
            cache_timeout=cache_timeout,
        )
        self.verification = VerificationCodes(
            self.store,
            ttl=timedelta(minutes=self.settings.email_verification_ttl_minutes),
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.events = EventDispatcher(
            [
                SecurityLogHandler(),
                LoginAlertHandler(self.email),
                AccountNotificationHandler(
                    self.email,
                    verification_ttl_minutes=self.settings.email_verification_ttl_minutes,
                ),
            ],
            max_attempts=self.settings.event_delivery_max_attempts,
        )
        self.auth = AuthService(
            self.store,
            tokens=self.tokens,
            sessions=self.sessions,
            second_factor=self.second_factor,
            verification=self.verification,
            events=self.events,
            passwords=CredentialVerifier(),
            suspicious_window=timedelta(hours=self.settings.suspicious_window_hours),
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            email_configured=self.email.is_configured,
            max_sessions=self.settings.max_sessions_per_account,
        )

    async def close(self) -> None:
        await self.events.drain(timeout=5)
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists, the slow path re-checks under the lock before creating.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Shared token bucket check.

    A cache outage allows the request through; the limiter state lives only
    in the shared cache so there is no per-instance fallback.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    try:
        return await bounded(
            runtime.cache.check_rate_limit(
                key, limit, window_seconds, return_remaining=return_remaining
            ),
            runtime.settings.cache_timeout_seconds,
            "check_rate_limit",
        )
    except CacheUnavailable as exc:
        logger.warning("rate_limit_unavailable", key_prefix=key.split(":", 1)[0], error=str(exc))
        return (True, limit, 0) if return_remaining else True
