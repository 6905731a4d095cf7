from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from authcore.storage.models import DEVICE_TYPES

REGISTRABLE_USER_TYPES = ("customer", "traveler", "both")

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "invalid_credentials",
    "account_not_loginable",
    "token_expired",
    "token_malformed",
    "token_revoked",
    "wrong_token_kind",
    "session_not_found",
    "session_mismatch",
    "second_factor_required",
    "invalid_second_factor_code",
    "backup_code_exhausted",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class DeviceFields(BaseModel):
    """Client device attributes sent alongside credentials."""

    device_type: str = Field(default="web", max_length=16)
    platform: Optional[str] = Field(default=None, max_length=32)
    app_version: Optional[str] = Field(default=None, max_length=32)
    push_token: Optional[str] = Field(default=None, max_length=512)
    location: Optional[Dict[str, Any]] = None

    @field_validator("device_type")
    @classmethod
    def _normalize_device_type(cls, value: str) -> str:
        normalized = (value or "web").lower()
        if normalized not in DEVICE_TYPES:
            raise ValueError(f"device_type must be one of: {', '.join(DEVICE_TYPES)}")
        return normalized

    @field_validator("location")
    @classmethod
    def _limit_location(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None and len(value) > 16:
            raise ValueError("location has too many fields")
        return value


class LoginRequest(DeviceFields):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class SecondFactorLoginRequest(DeviceFields):
    """Either the temp token from /auth/login or the credentials themselves, plus a code."""

    code: str = Field(..., min_length=6, max_length=16)
    temp_token: Optional[str] = Field(default=None, max_length=4096)
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_optional_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @model_validator(mode="after")
    def _require_token_or_credentials(self):
        if not self.temp_token and not (self.email and self.password):
            raise ValueError("provide temp_token or email and password")
        return self


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    all_devices: bool = False
    device_id: Optional[str] = Field(default=None, max_length=128)


class SecondFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    user_type: str = "customer"

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("user_type")
    @classmethod
    def _validate_user_type(cls, value: str) -> str:
        if value not in REGISTRABLE_USER_TYPES:
            raise ValueError(
                f"user_type must be one of: {', '.join(REGISTRABLE_USER_TYPES)}"
            )
        return value


class EmailVerificationRequest(BaseModel):
    email: str
    code: str = Field(..., min_length=4, max_length=12)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., max_length=128)


class AccountResponse(BaseModel):
    id: str
    email: str
    status: str
    verification_level: str
    user_type: str
    created_at: datetime
    email_verified_at: Optional[datetime] = None


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    session_id: str
    session_expires_at: datetime


class SuspicionResponse(BaseModel):
    suspicious: bool
    flags: List[str] = Field(default_factory=list)
    risk_level: str = "low"


class LoginResponse(BaseModel):
    requires_2fa: bool = False
    account: AccountResponse
    tokens: TokenPairResponse
    security: SuspicionResponse
    backup_codes_remaining: Optional[int] = None
    warning: Optional[str] = None


class SecondFactorChallengeResponse(BaseModel):
    requires_2fa: bool = True
    temp_token: str
    expires_in: int


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class ValidateResponse(BaseModel):
    valid: bool = True
    account: AccountResponse
    session_id: Optional[str] = None
    device_id: Optional[str] = None
    expires_at: datetime


class SessionResponse(BaseModel):
    id: str
    device_id: str
    device_type: str
    platform: Optional[str] = None
    app_version: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[dict] = None
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class CurrentSessionResponse(SessionResponse):
    current: bool = True
    token_expires_at: datetime


class SuspiciousSessionsResponse(SuspicionResponse):
    session_count: int = 0
    items: List[SessionResponse] = Field(default_factory=list)


class SecondFactorSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


class SecondFactorVerifyResponse(BaseModel):
    verified: bool
    method: Optional[str] = None
    backup_codes_remaining: Optional[int] = None
    warning: Optional[str] = None


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class SecondFactorStatusResponse(BaseModel):
    enabled: bool
    has_backup_codes: bool
    backup_codes_count: int
    enabled_at: Optional[datetime] = None


class RegisterResponse(BaseModel):
    account: AccountResponse
    verification_expires_in: int
