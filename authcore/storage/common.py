"""Common storage utilities shared between memory and postgres implementations.

Covers timestamp normalisation, JSON metadata parsing, at-rest encryption of
second-factor secrets, and the dict form of a session used by both the JSON
snapshot of the memory store and the cache payload.
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger
from authcore.storage.models import Session

logger = get_logger(__name__)


# ============================================================================
# TIMESTAMPS
# ============================================================================


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as a timezone-aware UTC datetime.

    Rows written by older deployments or drivers may carry naive timestamps;
    those are assumed to already be UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value is not None else None


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    return ensure_utc(datetime.fromisoformat(str(raw)))


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse metadata field from JSON string or dict."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except json.JSONDecodeError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# SECOND-FACTOR SECRET ENCRYPTION
# ============================================================================


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: Optional[str]) -> Fernet:
    """Build the Fernet cipher used for TOTP secrets at rest.

    Falls back to MFA_SECRET_KEY and then the refresh-token signing secret so
    both store implementations derive the same key from the same environment.
    """
    material = (
        key_material
        or os.getenv("MFA_SECRET_KEY")
        or os.getenv("JWT_REFRESH_SECRET")
    )
    if not material:
        raise RuntimeError(
            "No key material for second-factor secret encryption; set MFA_SECRET_KEY"
        )
    return Fernet(derive_cipher_key(material))


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken as exc:
        logger.error("second_factor_secret_decrypt_failed")
        raise RuntimeError("second-factor secret cannot be decrypted with the configured key") from exc


# ============================================================================
# SESSION SERIALIZATION
# ============================================================================


def session_to_dict(session: Session) -> dict:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "device_id": session.device_id,
        "refresh_token_hash": session.refresh_token_hash,
        "created_at": serialize_datetime(session.created_at),
        "expires_at": serialize_datetime(session.expires_at),
        "last_active_at": serialize_datetime(session.last_active_at),
        "device_type": session.device_type,
        "platform": session.platform,
        "app_version": session.app_version,
        "push_token": session.push_token,
        "ip_address": session.ip_address,
        "location": session.location,
        "user_agent": session.user_agent,
        "revoked_at": serialize_datetime(session.revoked_at),
        "revoked_reason": session.revoked_reason,
        "meta": session.meta,
    }


def session_from_dict(data: dict) -> Session:
    return Session(
        id=str(data["id"]),
        user_id=str(data["user_id"]),
        device_id=str(data["device_id"]),
        refresh_token_hash=data["refresh_token_hash"],
        created_at=parse_datetime(data["created_at"]),
        expires_at=parse_datetime(data["expires_at"]),
        last_active_at=parse_datetime(data.get("last_active_at") or data["created_at"]),
        device_type=data.get("device_type") or "web",
        platform=data.get("platform"),
        app_version=data.get("app_version"),
        push_token=data.get("push_token"),
        ip_address=str(data["ip_address"]) if data.get("ip_address") is not None else None,
        location=parse_json_meta(data.get("location")),
        user_agent=data.get("user_agent"),
        revoked_at=parse_datetime(data.get("revoked_at")),
        revoked_reason=data.get("revoked_reason"),
        meta=parse_json_meta(data.get("meta")),
    )
