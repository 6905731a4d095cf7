from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from authcore.logging import get_logger
from authcore.service.errors import (
    SecondFactorRequiredError,
    TokenExpiredError,
    TokenMalformedError,
    TokenRevokedError,
    WrongTokenKindError,
)
from authcore.storage.errors import CacheUnavailable
from authcore.storage.redis_cache import SessionCache, bounded

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = (ACCESS, REFRESH)
SECOND_FACTOR_MARKER = "temp2FA"

_RESERVED_CLAIMS = frozenset(
    {"iss", "aud", "sub", "kind", "jti", "iat", "exp", "sid", "did", SECOND_FACTOR_MARKER}
)


def hash_token(token: str) -> str:
    """Digest stored in place of a refresh token or verification code."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class IssuedToken:
    token: str
    jti: str
    expires_at: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_ttl: int
    access_jti: str
    access_exp: int
    refresh_jti: str
    refresh_exp: int

    def session_meta(self) -> dict:
        return {
            "access_jti": self.access_jti,
            "access_exp": self.access_exp,
            "refresh_jti": self.refresh_jti,
            "refresh_exp": self.refresh_exp,
        }


class TokenManager:
    """Issues and verifies HS256 access and refresh tokens.

    Each kind is signed with its own secret, so a leaked refresh key cannot
    mint access tokens. Revocation entries live in the shared cache under
    ``blacklist:<jti>`` with a TTL equal to the token's remaining lifetime.

    Revocation is observed on the next verification after the cache write
    lands; a verification racing a revocation on another instance can still
    succeed within that propagation window.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        second_factor_ttl_seconds: int,
        cache: Optional[SessionCache] = None,
        cache_timeout: float = 1.0,
        revocation_fail_open: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh signing secrets must differ")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.second_factor_ttl_seconds = second_factor_ttl_seconds
        self.cache = cache
        self.cache_timeout = cache_timeout
        self.revocation_fail_open = revocation_fail_open
        self._clock = clock

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, kind: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(payload['kind'], signing_input)}"

    def _claims(
        self,
        kind: str,
        account_id: str,
        ttl_seconds: int,
        *,
        device_id: Optional[str],
        session_id: Optional[str],
        claims: Optional[dict],
    ) -> dict[str, Any]:
        now = int(self._clock())
        payload: dict[str, Any] = {
            k: v for k, v in (claims or {}).items() if k not in _RESERVED_CLAIMS
        }
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "sub": account_id,
                "kind": kind,
                "jti": str(uuid.uuid4()),
                "iat": now,
                "exp": now + int(ttl_seconds),
            }
        )
        if session_id:
            payload["sid"] = session_id
        if device_id:
            payload["did"] = device_id
        return payload

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_access(
        self,
        account_id: str,
        *,
        device_id: Optional[str] = None,
        session_id: Optional[str] = None,
        claims: Optional[dict] = None,
    ) -> IssuedToken:
        payload = self._claims(
            ACCESS,
            account_id,
            self.access_ttl_seconds,
            device_id=device_id,
            session_id=session_id,
            claims=claims,
        )
        return IssuedToken(self._encode(payload), payload["jti"], payload["exp"])

    def issue_refresh(
        self,
        account_id: str,
        *,
        device_id: Optional[str] = None,
        session_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        claims: Optional[dict] = None,
    ) -> IssuedToken:
        payload = self._claims(
            REFRESH,
            account_id,
            ttl_seconds or self.refresh_ttl_seconds,
            device_id=device_id,
            session_id=session_id,
            claims=claims,
        )
        return IssuedToken(self._encode(payload), payload["jti"], payload["exp"])

    def issue_pair(
        self,
        account_id: str,
        device_id: Optional[str],
        claims: Optional[dict] = None,
        *,
        session_id: Optional[str] = None,
        refresh_ttl_seconds: Optional[int] = None,
    ) -> TokenPair:
        access = self.issue_access(
            account_id, device_id=device_id, session_id=session_id, claims=claims
        )
        refresh = self.issue_refresh(
            account_id,
            device_id=device_id,
            session_id=session_id,
            ttl_seconds=refresh_ttl_seconds,
            claims=claims,
        )
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_ttl=self.access_ttl_seconds,
            access_jti=access.jti,
            access_exp=access.expires_at,
            refresh_jti=refresh.jti,
            refresh_exp=refresh.expires_at,
        )

    def issue_second_factor_token(
        self, account_id: str, *, device_id: Optional[str] = None, claims: Optional[dict] = None
    ) -> IssuedToken:
        """Short-lived access-signed token that only unlocks the second-factor step."""
        payload = self._claims(
            ACCESS,
            account_id,
            self.second_factor_ttl_seconds,
            device_id=device_id,
            session_id=None,
            claims=claims,
        )
        payload[SECOND_FACTOR_MARKER] = True
        return IssuedToken(self._encode(payload), payload["jti"], payload["exp"])

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def decode(
        self, token: str, expected_kind: Optional[str] = None, *, verify_exp: bool = True
    ) -> dict[str, Any]:
        """Check signature, issuer, audience, expiry and kind; no revocation lookup."""
        if not token or not isinstance(token, str):
            raise TokenMalformedError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.info("token_rejected", reason="segment_count")
            raise TokenMalformedError("token is malformed")

        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.info("token_rejected", reason="undecodable", error=str(exc))
            raise TokenMalformedError("token is malformed")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_rejected",
                reason="algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenMalformedError("token is malformed")
        if not isinstance(payload, dict):
            raise TokenMalformedError("token is malformed")

        kind = payload.get("kind")
        if kind not in TOKEN_KINDS:
            logger.info("token_rejected", reason="unknown_kind")
            raise TokenMalformedError("token is malformed")
        expected_sig = self._signature(kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            logger.info("token_rejected", reason="signature", kind=kind)
            raise TokenMalformedError("token is malformed")

        aud = payload.get("aud")
        valid_aud = aud == self.audience or (isinstance(aud, list) and self.audience in aud)
        if payload.get("iss") != self.issuer or not valid_aud:
            logger.info("token_rejected", reason="issuer_or_audience")
            raise TokenMalformedError("token is malformed")
        if not payload.get("sub") or not payload.get("jti"):
            raise TokenMalformedError("token is malformed")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise TokenMalformedError("token is malformed")
        if verify_exp and exp_ts <= self._clock():
            raise TokenExpiredError("token has expired")

        if expected_kind is not None and kind != expected_kind:
            logger.info("token_rejected", reason="wrong_kind", kind=kind, expected=expected_kind)
            raise WrongTokenKindError(f"expected a {expected_kind} token")
        return payload

    async def verify(self, token: str, expected_kind: str) -> dict[str, Any]:
        payload = self.decode(token, expected_kind)
        if await self._is_jti_revoked(payload["jti"]):
            raise TokenRevokedError("token has been revoked")
        return payload

    async def verify_access(self, token: str) -> dict[str, Any]:
        payload = await self.verify(token, ACCESS)
        if payload.get(SECOND_FACTOR_MARKER):
            raise SecondFactorRequiredError("second factor verification required")
        return payload

    async def verify_refresh(self, token: str) -> dict[str, Any]:
        return await self.verify(token, REFRESH)

    async def verify_second_factor_token(self, token: str) -> dict[str, Any]:
        payload = await self.verify(token, ACCESS)
        if not payload.get(SECOND_FACTOR_MARKER):
            raise WrongTokenKindError("expected a second-factor token")
        return payload

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def revoke(self, token: str) -> bool:
        """Blacklist ``token`` until its own expiry; False if already expired or not recorded."""
        payload = self.decode(token, verify_exp=False)
        return await self.revoke_jti(payload["jti"], payload["exp"])

    async def revoke_jti(self, jti: str, exp: Any) -> bool:
        try:
            remaining = math.ceil(float(exp) - self._clock())
        except (TypeError, ValueError):
            return False
        if remaining <= 0:
            return False
        if self.cache is None:
            return False
        try:
            await bounded(self.cache.revoke_jti(jti, remaining), self.cache_timeout, "revoke_jti")
        except CacheUnavailable as exc:
            # The durable session revocation still blocks refresh and authenticate
            logger.error("token_revocation_write_failed", jti=jti, error=str(exc))
            return False
        return True

    async def is_revoked(self, token: str) -> bool:
        payload = self.decode(token, verify_exp=False)
        return await self._is_jti_revoked(payload["jti"])

    async def _is_jti_revoked(self, jti: str) -> bool:
        if self.cache is None:
            return False
        try:
            return await bounded(self.cache.is_jti_revoked(jti), self.cache_timeout, "is_jti_revoked")
        except CacheUnavailable as exc:
            if self.revocation_fail_open:
                logger.warning("revocation_check_failed_defaulting_to_valid", jti=jti, error=str(exc))
                return False
            logger.warning("revocation_check_failed_defaulting_to_revoked", jti=jti, error=str(exc))
            return True
