from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

ACCOUNT_STATUSES = ("pending", "active", "suspended", "banned", "deactivated")
VERIFICATION_LEVELS = ("unverified", "email_verified", "phone_verified", "fully_verified")
DEVICE_TYPES = ("web", "mobile", "tablet", "desktop")
VERIFICATION_PURPOSES = ("email_verification", "password_reset")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    status: str = "pending"
    verification_level: str = "unverified"
    user_type: str = "customer"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    email_verified_at: Optional[datetime] = None
    meta: Dict | None = None

    def can_login(self) -> bool:
        return self.status == "active" and self.verification_level != "unverified"


@dataclass
class DeviceInfo:
    """Client device attributes captured at login."""

    device_id: str
    device_type: str = "web"
    platform: Optional[str] = None
    app_version: Optional[str] = None
    push_token: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[dict] = None
    user_agent: Optional[str] = None


@dataclass
class Session:
    id: str
    user_id: str
    device_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    last_active_at: datetime
    device_type: str = "web"
    platform: Optional[str] = None
    app_version: Optional[str] = None
    push_token: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[dict] = None
    user_agent: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        device: DeviceInfo,
        refresh_token_hash: str,
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
        session_id: Optional[str] = None,
        meta: Dict | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            device_id=device.device_id,
            refresh_token_hash=refresh_token_hash,
            created_at=created,
            expires_at=created + ttl,
            last_active_at=created,
            device_type=device.device_type,
            platform=device.platform,
            app_version=device.app_version,
            push_token=device.push_token,
            ip_address=device.ip_address,
            location=device.location,
            user_agent=device.user_agent,
            meta=meta,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.revoked_at is None and self.expires_at > (now or utcnow())


@dataclass
class SecondFactorCredential:
    user_id: str
    secret: str
    backup_code_hashes: List[str] = field(default_factory=list)
    used_backup_code_hashes: List[str] = field(default_factory=list)
    enabled: bool = False
    enabled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class VerificationToken:
    id: str
    user_id: str
    purpose: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.used_at is None and self.expires_at > (now or utcnow())
