from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Any, Callable

from authcore.logging import get_logger
from authcore.service.tokens import hash_token
from authcore.storage.common import generate_uuid
from authcore.storage.models import VERIFICATION_PURPOSES, VerificationToken, utcnow

logger = get_logger(__name__)

EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"


class VerificationCodes:
    """Single-use numeric codes bound to an account and a purpose.

    Only a SHA-256 digest of ``<account_id>:<code>`` is stored, so equal codes
    issued to different accounts never collide.
    """

    def __init__(
        self,
        store: Any,
        *,
        ttl: timedelta = timedelta(minutes=30),
        digits: int = 6,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.digits = digits
        self._clock = clock

    @staticmethod
    def _digest(account_id: str, code: str) -> str:
        return hash_token(f"{account_id}:{code.strip()}")

    def issue(self, account_id: str, purpose: str = EMAIL_VERIFICATION) -> str:
        if purpose not in VERIFICATION_PURPOSES:
            raise ValueError(f"unknown verification purpose: {purpose}")
        code = str(secrets.randbelow(10**self.digits)).zfill(self.digits)
        now = self._clock()
        self.store.insert_verification_token(
            VerificationToken(
                id=generate_uuid(),
                user_id=account_id,
                purpose=purpose,
                token_hash=self._digest(account_id, code),
                expires_at=now + self.ttl,
                created_at=now,
            )
        )
        logger.info("verification_code_issued", account_id=account_id, purpose=purpose)
        return code

    def consume(self, account_id: str, code: str, purpose: str = EMAIL_VERIFICATION) -> bool:
        """Mark the code used; False when unknown, expired or already used."""
        if not code:
            return False
        now = self._clock()
        record = self.store.get_verification_token(purpose, self._digest(account_id, code))
        if record is None or record.user_id != account_id or not record.is_usable(now):
            logger.info("verification_code_rejected", account_id=account_id, purpose=purpose)
            return False
        return self.store.mark_verification_token_used(record.id, now)
