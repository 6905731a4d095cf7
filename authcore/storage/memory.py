from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    parse_datetime,
    serialize_datetime,
    session_from_dict,
    session_to_dict,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    ACCOUNT_STATUSES,
    Account,
    SecondFactorCredential,
    Session,
    VerificationToken,
    utcnow,
)


class MemoryStore:
    """In-process durable store for tests and single-node development.

    All maps are guarded by one re-entrant lock and snapshotted to JSON under
    ``fs_root/state`` after every mutation so a restart keeps accounts,
    sessions and second-factor credentials.
    """

    def __init__(
        self, fs_root: str = "/tmp/authcore", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.second_factors: Dict[str, SecondFactorCredential] = {}
        self.verification_tokens: Dict[str, VerificationToken] = {}
        # RLock so helpers can be called with the lock already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._secret_cipher = build_secret_cipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "authcore_store.json"

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(
        self,
        email: str,
        *,
        status: str = "pending",
        user_type: str = "customer",
        verification_level: str = "unverified",
        meta: Optional[Dict] = None,
    ) -> Account:
        normalized_email = email.strip().lower()
        if status not in ACCOUNT_STATUSES:
            raise ValueError(f"unknown account status: {status}")
        with self._data_lock:
            if any(a.email == normalized_email for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized_email,
                status=status,
                verification_level=verification_level,
                user_type=user_type,
                created_at=now,
                updated_at=now,
                email_verified_at=now if verification_level != "unverified" else None,
                meta=meta.copy() if meta else {},
            )
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized_email = email.strip().lower()
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized_email), None
            )
            return replace(account) if account else None

    def update_account_status(
        self,
        account_id: str,
        status: str,
        *,
        verification_level: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> Optional[Account]:
        if status not in ACCOUNT_STATUSES:
            raise ValueError(f"unknown account status: {status}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.status = status
            if verification_level is not None:
                account.verification_level = verification_level
            if email_verified_at is not None:
                account.email_verified_at = email_verified_at
            account.updated_at = utcnow()
            self._persist_state()
            return replace(account)

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.accounts:
                raise ConstraintViolation("session account missing", {"account_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_sessions(
        self,
        account_id: str,
        *,
        active_at: Optional[datetime] = None,
        created_since: Optional[datetime] = None,
    ) -> List[Session]:
        """Return an account's sessions, most recently active first."""
        with self._data_lock:
            results = [s for s in self.sessions.values() if s.user_id == account_id]
            if active_at is not None:
                results = [s for s in results if s.is_active(active_at)]
            if created_since is not None:
                results = [s for s in results if s.created_at >= created_since]
            results.sort(key=lambda s: s.last_active_at, reverse=True)
            return [replace(s) for s in results]

    def touch_session(self, session_id: str, last_active_at: datetime) -> bool:
        """Bump activity on a live session; False when it is missing, revoked or expired."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active(last_active_at):
                return False
            sess.last_active_at = last_active_at
            self._persist_state()
            return True

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.meta = dict(meta)
            self._persist_state()

    def revoke_session(
        self, session_id: str, revoked_at: datetime, reason: str
    ) -> bool:
        """Mark a session revoked; returns False when it was missing or already revoked."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None:
                return False
            sess.revoked_at = revoked_at
            sess.revoked_reason = reason
            self._persist_state()
            return True

    def purge_sessions(self, before: datetime) -> int:
        """Delete sessions that ended (revoked or expired) before ``before``."""
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if (sess.revoked_at is not None and sess.revoked_at < before)
                or sess.expires_at < before
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    def get_second_factor(self, account_id: str) -> Optional[SecondFactorCredential]:
        with self._data_lock:
            record = self.second_factors.get(account_id)
            if not record:
                return None
            return replace(
                record,
                secret=decrypt_secret(self._secret_cipher, record.secret),
                backup_code_hashes=list(record.backup_code_hashes),
                used_backup_code_hashes=list(record.used_backup_code_hashes),
            )

    def save_second_factor(self, credential: SecondFactorCredential) -> SecondFactorCredential:
        with self._data_lock:
            if credential.user_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for second factor", {"account_id": credential.user_id}
                )
            stored = replace(
                credential,
                secret=encrypt_secret(self._secret_cipher, credential.secret),
                backup_code_hashes=list(credential.backup_code_hashes),
                used_backup_code_hashes=list(credential.used_backup_code_hashes),
                updated_at=utcnow(),
            )
            self.second_factors[credential.user_id] = stored
            self._persist_state()
            return replace(credential, updated_at=stored.updated_at)

    def consume_backup_code(self, account_id: str, code_hash: str) -> Optional[int]:
        """Remove ``code_hash`` from the account's set; returns the remaining count.

        Returns None when the hash is not present, so concurrent use of the
        same code succeeds for exactly one caller.
        """
        with self._data_lock:
            record = self.second_factors.get(account_id)
            if not record or code_hash not in record.backup_code_hashes:
                return None
            record.backup_code_hashes = [h for h in record.backup_code_hashes if h != code_hash]
            record.used_backup_code_hashes = [*record.used_backup_code_hashes, code_hash]
            record.updated_at = utcnow()
            self._persist_state()
            return len(record.backup_code_hashes)

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def insert_verification_token(self, token: VerificationToken) -> VerificationToken:
        with self._data_lock:
            if token.user_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for verification token", {"account_id": token.user_id}
                )
            self.verification_tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def get_verification_token(
        self, purpose: str, token_hash: str
    ) -> Optional[VerificationToken]:
        with self._data_lock:
            matches = [
                t
                for t in self.verification_tokens.values()
                if t.purpose == purpose and t.token_hash == token_hash
            ]
            if not matches:
                return None
            return replace(max(matches, key=lambda t: t.created_at))

    def mark_verification_token_used(self, token_id: str, used_at: datetime) -> bool:
        with self._data_lock:
            token = self.verification_tokens.get(token_id)
            if not token or token.used_at is not None:
                return False
            token.used_at = used_at
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "account_id": account_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for account_id, creds in self.credentials.items()
            ],
            "sessions": [session_to_dict(s) for s in self.sessions.values()],
            "second_factors": [
                self._serialize_second_factor(c) for c in self.second_factors.values()
            ],
            "verification_tokens": [
                self._serialize_verification_token(t)
                for t in self.verification_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            entry["account_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {s["id"]: session_from_dict(s) for s in data.get("sessions", [])}
        self.second_factors = {
            c["user_id"]: self._deserialize_second_factor(c)
            for c in data.get("second_factors", [])
        }
        self.verification_tokens = {
            t["id"]: self._deserialize_verification_token(t)
            for t in data.get("verification_tokens", [])
        }
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "status": account.status,
            "verification_level": account.verification_level,
            "user_type": account.user_type,
            "created_at": serialize_datetime(account.created_at),
            "updated_at": serialize_datetime(account.updated_at),
            "email_verified_at": serialize_datetime(account.email_verified_at),
            "meta": account.meta,
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            status=data.get("status", "pending"),
            verification_level=data.get("verification_level", "unverified"),
            user_type=data.get("user_type", "customer"),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data.get("updated_at")),
            email_verified_at=parse_datetime(data.get("email_verified_at")),
            meta=data.get("meta"),
        )

    def _serialize_second_factor(self, credential: SecondFactorCredential) -> dict:
        # secret is already encrypted in the in-memory map
        return {
            "user_id": credential.user_id,
            "secret": credential.secret,
            "backup_code_hashes": list(credential.backup_code_hashes),
            "used_backup_code_hashes": list(credential.used_backup_code_hashes),
            "enabled": credential.enabled,
            "enabled_at": serialize_datetime(credential.enabled_at),
            "created_at": serialize_datetime(credential.created_at),
            "updated_at": serialize_datetime(credential.updated_at),
        }

    def _deserialize_second_factor(self, data: dict) -> SecondFactorCredential:
        return SecondFactorCredential(
            user_id=str(data["user_id"]),
            secret=data["secret"],
            backup_code_hashes=list(data.get("backup_code_hashes", [])),
            used_backup_code_hashes=list(data.get("used_backup_code_hashes", [])),
            enabled=bool(data.get("enabled", False)),
            enabled_at=parse_datetime(data.get("enabled_at")),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data.get("updated_at")),
        )

    def _serialize_verification_token(self, token: VerificationToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "purpose": token.purpose,
            "token_hash": token.token_hash,
            "expires_at": serialize_datetime(token.expires_at),
            "created_at": serialize_datetime(token.created_at),
            "used_at": serialize_datetime(token.used_at),
        }

    def _deserialize_verification_token(self, data: dict) -> VerificationToken:
        return VerificationToken(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            purpose=data["purpose"],
            token_hash=data["token_hash"],
            expires_at=parse_datetime(data["expires_at"]),
            created_at=parse_datetime(data["created_at"]),
            used_at=parse_datetime(data.get("used_at")),
        )
