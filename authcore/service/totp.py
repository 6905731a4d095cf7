from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional
from urllib.parse import quote, urlencode

from authcore.logging import get_logger
from authcore.service.errors import (
    BackupCodeExhaustedError,
    ConflictError,
    InvalidSecondFactorCodeError,
    NotFoundError,
    RateLimitedError,
)
from authcore.storage.errors import CacheUnavailable
from authcore.storage.models import SecondFactorCredential, utcnow
from authcore.storage.redis_cache import SessionCache, bounded

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
BACKUP_CODE_LENGTH = 8
LOW_BACKUP_CODE_THRESHOLD = 2

_TOTP_RE = re.compile(r"^\d{6}$")
_BACKUP_RE = re.compile(r"^[0-9A-F]{8}$")


# ============================================================================
# TOTP / BACKUP-CODE PRIMITIVES
# ============================================================================


def generate_secret(num_bytes: int = 20) -> str:
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode().rstrip("=")


def _secret_key(secret: str) -> Optional[bytes]:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return None


def totp_at(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for the step containing ``timestamp``."""
    key = _secret_key(secret)
    if key is None:
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def normalize_code(code: Optional[str]) -> str:
    return re.sub(r"[\s-]", "", code or "").upper()


def verify_totp(
    secret: str,
    code: str,
    *,
    window: int = 2,
    interval: int = TOTP_INTERVAL,
    at: Optional[float] = None,
) -> bool:
    """Check ``code`` against every step in ``[-window, +window]``.

    All candidates are computed and compared so the cost does not depend on
    which step matched.
    """
    candidate = normalize_code(code)
    if not secret or not _TOTP_RE.match(candidate):
        return False
    now = time.time() if at is None else at
    matched = False
    for offset in range(-window, window + 1):
        expected = totp_at(secret, now + offset * interval, interval=interval)
        matched |= bool(expected) & hmac.compare_digest(expected, candidate)
    return matched


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_name}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def generate_backup_codes(count: int = 10) -> List[str]:
    return [secrets.token_hex(BACKUP_CODE_LENGTH // 2).upper() for _ in range(count)]


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode()).hexdigest()


def looks_like_backup_code(code: str) -> bool:
    return bool(_BACKUP_RE.match(normalize_code(code)))


# ============================================================================
# SECOND-FACTOR SERVICE
# ============================================================================


@dataclass
class SecondFactorSetup:
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class VerificationResult:
    verified: bool
    method: Optional[str] = None
    remaining_backup_codes: Optional[int] = None
    reason: Optional[str] = None

    @property
    def low_on_backup_codes(self) -> bool:
        return (
            self.remaining_backup_codes is not None
            and self.remaining_backup_codes <= LOW_BACKUP_CODE_THRESHOLD
        )


class SecondFactorService:
    """Setup, verification and lifecycle of TOTP second factors with backup codes."""

    def __init__(
        self,
        store: Any,
        cache: Optional[SessionCache],
        *,
        issuer: str = "AuthCore",
        window: int = 2,
        backup_code_count: int = 10,
        max_attempts: int = 5,
        lockout_seconds: int = 300,
        cache_timeout: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.issuer = issuer
        self.window = window
        self.backup_code_count = backup_code_count
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.cache_timeout = cache_timeout
        self._clock = clock

    def verify(self, secret: str, code: str) -> bool:
        return verify_totp(secret, code, window=self.window, at=self._clock())

    def is_enabled(self, account_id: str) -> bool:
        credential = self.store.get_second_factor(account_id)
        return bool(credential and credential.enabled)

    # ------------------------------------------------------------------
    # Lockout bookkeeping; a cache outage skips it rather than blocking 2FA
    # ------------------------------------------------------------------

    async def _ensure_not_locked(self, account_id: str) -> None:
        if self.cache is None:
            return
        try:
            locked = await bounded(
                self.cache.is_second_factor_locked(account_id),
                self.cache_timeout,
                "is_second_factor_locked",
            )
        except CacheUnavailable as exc:
            logger.warning("second_factor_lockout_check_failed", account_id=account_id, error=str(exc))
            return
        if locked:
            raise RateLimitedError(
                "too many failed verification attempts",
                detail={"retry_after": self.lockout_seconds},
            )

    async def _record_failure(self, account_id: str) -> None:
        if self.cache is None:
            return
        try:
            locked, attempts = await bounded(
                self.cache.record_second_factor_failure(
                    account_id, self.max_attempts, self.lockout_seconds
                ),
                self.cache_timeout,
                "record_second_factor_failure",
            )
        except CacheUnavailable as exc:
            logger.warning("second_factor_failure_record_failed", account_id=account_id, error=str(exc))
            return
        if locked:
            logger.warning("second_factor_locked_out", account_id=account_id, attempts=attempts)
            raise RateLimitedError(
                "too many failed verification attempts",
                detail={"retry_after": self.lockout_seconds},
            )

    async def _clear_failures(self, account_id: str) -> None:
        if self.cache is None:
            return
        try:
            await bounded(
                self.cache.clear_second_factor_failures(account_id),
                self.cache_timeout,
                "clear_second_factor_failures",
            )
        except CacheUnavailable as exc:
            logger.warning("second_factor_failure_clear_failed", account_id=account_id, error=str(exc))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self, account_id: str, account_name: str) -> SecondFactorSetup:
        """Create or overwrite a pending (disabled) credential."""
        existing = self.store.get_second_factor(account_id)
        if existing and existing.enabled:
            raise ConflictError("second factor is already enabled")
        secret = generate_secret()
        codes = generate_backup_codes(self.backup_code_count)
        self.store.save_second_factor(
            SecondFactorCredential(
                user_id=account_id,
                secret=secret,
                backup_code_hashes=[hash_backup_code(c) for c in codes],
                enabled=False,
                enabled_at=None,
                created_at=existing.created_at if existing else utcnow(),
            )
        )
        logger.info("second_factor_setup_started", account_id=account_id)
        return SecondFactorSetup(
            secret=secret,
            provisioning_uri=provisioning_uri(secret, account_name, self.issuer),
            backup_codes=codes,
        )

    async def enable(self, account_id: str, code: str) -> SecondFactorCredential:
        credential = self.store.get_second_factor(account_id)
        if credential is None:
            raise NotFoundError("second factor setup not found")
        if credential.enabled:
            raise ConflictError("second factor is already enabled")
        await self._ensure_not_locked(account_id)
        if not self.verify(credential.secret, code):
            await self._record_failure(account_id)
            raise InvalidSecondFactorCodeError("invalid verification code")
        await self._clear_failures(account_id)
        credential.enabled = True
        credential.enabled_at = utcnow()
        saved = self.store.save_second_factor(credential)
        logger.info("second_factor_enabled", account_id=account_id)
        return saved

    async def consume_if_valid(self, account_id: str, code: str) -> VerificationResult:
        """Try TOTP first, then a backup code; a matched backup code is removed."""
        credential = self.store.get_second_factor(account_id)
        if credential is None or not credential.enabled:
            return VerificationResult(verified=False, reason="not_enabled")
        await self._ensure_not_locked(account_id)

        if self.verify(credential.secret, code):
            await self._clear_failures(account_id)
            return VerificationResult(verified=True, method="totp")

        if looks_like_backup_code(code):
            code_hash = hash_backup_code(code)
            remaining = self.store.consume_backup_code(account_id, code_hash)
            if remaining is not None:
                await self._clear_failures(account_id)
                logger.info("backup_code_consumed", account_id=account_id, remaining=remaining)
                return VerificationResult(
                    verified=True, method="backup_code", remaining_backup_codes=remaining
                )
            # A spent code is a plain miss even once the set is empty
            if not credential.backup_code_hashes and code_hash not in credential.used_backup_code_hashes:
                await self._record_failure(account_id)
                return VerificationResult(verified=False, reason="backup_codes_exhausted")

        await self._record_failure(account_id)
        return VerificationResult(verified=False, reason="invalid_code")

    async def require(self, account_id: str, code: str) -> VerificationResult:
        """consume_if_valid that raises the matching auth error on failure."""
        result = await self.consume_if_valid(account_id, code)
        if result.verified:
            return result
        if result.reason == "backup_codes_exhausted":
            raise BackupCodeExhaustedError("no backup codes remain; use an authenticator code")
        raise InvalidSecondFactorCodeError("invalid verification code")

    async def disable(self, account_id: str, code: str) -> VerificationResult:
        credential = self.store.get_second_factor(account_id)
        if credential is None or not credential.enabled:
            raise NotFoundError("second factor is not enabled")
        result = await self.require(account_id, code)
        credential = self.store.get_second_factor(account_id) or credential
        credential.enabled = False
        credential.enabled_at = None
        credential.backup_code_hashes = []
        credential.used_backup_code_hashes = []
        self.store.save_second_factor(credential)
        logger.info("second_factor_disabled", account_id=account_id, method=result.method)
        return result

    async def regenerate(self, account_id: str, code: str) -> List[str]:
        """Replace the whole backup code set after a TOTP check."""
        credential = self.store.get_second_factor(account_id)
        if credential is None or not credential.enabled:
            raise NotFoundError("second factor is not enabled")
        await self._ensure_not_locked(account_id)
        if not self.verify(credential.secret, code):
            await self._record_failure(account_id)
            raise InvalidSecondFactorCodeError("invalid verification code")
        await self._clear_failures(account_id)
        codes = generate_backup_codes(self.backup_code_count)
        credential.backup_code_hashes = [hash_backup_code(c) for c in codes]
        credential.used_backup_code_hashes = []
        self.store.save_second_factor(credential)
        logger.info("backup_codes_regenerated", account_id=account_id)
        return codes

    def status(self, account_id: str) -> dict:
        credential = self.store.get_second_factor(account_id)
        if credential is None:
            return {
                "enabled": False,
                "has_backup_codes": False,
                "backup_codes_count": 0,
                "enabled_at": None,
            }
        return {
            "enabled": credential.enabled,
            "has_backup_codes": bool(credential.backup_code_hashes),
            "backup_codes_count": len(credential.backup_code_hashes),
            "enabled_at": credential.enabled_at.isoformat() if credential.enabled_at else None,
        }
