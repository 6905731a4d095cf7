from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_SEQUENCE_RE = re.compile(r"123456|abcdef|qwerty|asdfgh|zxcvbn")
_REPEAT_RE = re.compile(r"(.)\1{2,}")

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "123456789",
        "qwerty",
        "abc123",
        "password123",
        "admin",
        "letmein",
        "welcome",
        "monkey",
        "1234567890",
    }
)


@dataclass
class PasswordCheck:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    strength: str = "weak"


def password_strength(password: str) -> str:
    """Score a password into weak / medium / strong / very_strong."""
    if not password:
        return "weak"
    has_lower = bool(re.search(r"[a-z]", password))
    has_upper = bool(re.search(r"[A-Z]", password))
    has_digit = bool(re.search(r"\d", password))
    has_special = bool(_SPECIAL_RE.search(password))
    has_alpha = has_lower or has_upper

    score = min(len(password) * 4, 25)
    score += 5 * has_lower + 5 * has_upper + 5 * has_digit + 10 * has_special
    if has_lower and has_upper:
        score += 5
    if has_digit and has_alpha:
        score += 5
    if has_digit and has_special:
        score += 5
    if has_alpha and has_special:
        score += 5
    if len(password) >= 12:
        score += 10
    if len(password) >= 16:
        score += 10
    if _REPEAT_RE.search(password):
        score -= 10
    if re.search(r"123456|abcdef|qwerty", password.lower()):
        score -= 15

    if score < 30:
        return "weak"
    if score < 60:
        return "medium"
    if score < 90:
        return "strong"
    return "very_strong"


def check_password_policy(password: str, *, email: Optional[str] = None) -> PasswordCheck:
    errors: List[str] = []
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if password and len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be no more than {MAX_PASSWORD_LENGTH} characters long")
    if not password:
        return PasswordCheck(is_valid=False, errors=errors)

    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_RE.search(password):
        errors.append("Password must contain at least one special character")

    lowered = password.lower()
    if email:
        email_lower = email.strip().lower()
        local_part = email_lower.split("@", 1)[0]
        if email_lower in lowered or (len(local_part) >= 3 and local_part in lowered):
            errors.append("Password cannot contain your email address")
    if lowered in COMMON_PASSWORDS:
        errors.append("Password is too common, please choose a different one")
    if _SEQUENCE_RE.search(lowered):
        errors.append("Password cannot contain sequential characters")
    if _REPEAT_RE.search(password):
        errors.append("Password cannot contain more than 2 repeated characters")

    return PasswordCheck(
        is_valid=not errors, errors=errors, strength=password_strength(password)
    )


class CredentialVerifier:
    """argon2id hashing and verification of account passwords."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Compared against when the account is unknown so every branch pays one verify
        self._dummy_hash = self._hasher.hash("authcore-dummy-password")

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: str, password: str, *, algo: str = PASSWORD_ALGO) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            self.burn(password)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unusable", error=str(exc))
            return False

    def burn(self, password: str) -> None:
        """Spend one verification on the dummy hash."""
        try:
            self._hasher.verify(self._dummy_hash, password or "")
        except VerifyMismatchError:
            pass

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
