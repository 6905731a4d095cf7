from __future__ import annotations

import json
import uuid
from datetime import datetime
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    parse_datetime,
    parse_json_meta,
    safe_row_value,
    session_from_dict,
)
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    ACCOUNT_STATUSES,
    Account,
    SecondFactorCredential,
    Session,
    VerificationToken,
    utcnow,
)


def _uuid_or_none(value: str) -> Optional[str]:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError):
        return None


class PostgresStore:
    """Postgres-backed durable store for accounts, sessions and second factors."""

    def __init__(
        self,
        dsn: str,
        fs_root: str,
        *,
        mfa_encryption_key: str | None = None,
        pool_timeout: float = 5.0,
        connect_timeout: int = 5,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=pool_timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": connect_timeout,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._secret_cipher = build_secret_cipher(mfa_encryption_key)
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection; pool waits and slow statements surface as StoreUnavailable."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_exhausted", error=str(exc))
            raise StoreUnavailable("connection", exc) from exc
        except errors.QueryCanceled as exc:
            self.logger.error("postgres_statement_timeout", error=str(exc))
            raise StoreUnavailable("statement", exc) from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unreachable", error=str(exc))
            raise StoreUnavailable("connection", exc) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "accounts",
            "account_credentials",
            "sessions",
            "second_factor_credentials",
            "verification_tokens",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply authcore/storage/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _account_from_row(self, row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            status=row.get("status", "pending"),
            verification_level=row.get("verification_level", "unverified"),
            user_type=row.get("user_type", "customer"),
            created_at=parse_datetime(row.get("created_at")) or utcnow(),
            updated_at=parse_datetime(row.get("updated_at")),
            email_verified_at=parse_datetime(row.get("email_verified_at")),
            meta=parse_json_meta(row.get("meta")),
        )

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
        account_id = str(uuid.uuid4())
        now = utcnow()
        email_verified_at = now if verification_level != "unverified" else None
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO accounts (id, email, status, verification_level, user_type, created_at, updated_at, email_verified_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account_id,
                        normalized_email,
                        status,
                        verification_level,
                        user_type,
                        now,
                        now,
                        email_verified_at,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return Account(
            id=account_id,
            email=normalized_email,
            status=status,
            verification_level=verification_level,
            user_type=user_type,
            created_at=now,
            updated_at=now,
            email_verified_at=email_verified_at,
            meta=meta,
        )

    def get_account(self, account_id: str) -> Optional[Account]:
        key = _uuid_or_none(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = %s", (key,)).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE lower(email) = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._account_from_row(row) if row else None

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
        key = _uuid_or_none(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE accounts
                SET status = %s,
                    verification_level = COALESCE(%s, verification_level),
                    email_verified_at = COALESCE(%s, email_verified_at),
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (status, verification_level, email_verified_at, utcnow(), key),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credentials (account_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        key = _uuid_or_none(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credentials WHERE account_id = %s",
                (key,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row.get("password_algo") or ""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (
                        id, user_id, device_id, refresh_token_hash, created_at, expires_at,
                        last_active_at, device_type, platform, app_version, push_token,
                        ip_address, location, user_agent, meta
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.device_id,
                        session.refresh_token_hash,
                        session.created_at,
                        session.expires_at,
                        session.last_active_at,
                        session.device_type,
                        session.platform,
                        session.app_version,
                        session.push_token,
                        session.ip_address,
                        json.dumps(session.location) if session.location else None,
                        session.user_agent,
                        json.dumps(session.meta) if session.meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session account missing", {"account_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        key = _uuid_or_none(session_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = %s", (key,)).fetchone()
        return session_from_dict(row) if row else None

    def list_sessions(
        self,
        account_id: str,
        *,
        active_at: Optional[datetime] = None,
        created_since: Optional[datetime] = None,
    ) -> List[Session]:
        key = _uuid_or_none(account_id)
        if key is None:
            return []
        clauses = ["user_id = %s"]
        params: list[Any] = [key]
        if active_at is not None:
            clauses.append("revoked_at IS NULL AND expires_at > %s")
            params.append(active_at)
        if created_since is not None:
            clauses.append("created_at >= %s")
            params.append(created_since)
        query = (
            "SELECT * FROM sessions WHERE "
            + " AND ".join(clauses)
            + " ORDER BY last_active_at DESC"
        )
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [session_from_dict(row) for row in rows]

    def touch_session(self, session_id: str, last_active_at: datetime) -> bool:
        key = _uuid_or_none(session_id)
        if key is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sessions SET last_active_at = %s
                WHERE id = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING id
                """,
                (last_active_at, key, last_active_at),
            ).fetchone()
        return row is not None

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        key = _uuid_or_none(session_id)
        if key is None:
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET meta = %s WHERE id = %s",
                (json.dumps(meta), key),
            )

    def revoke_session(
        self, session_id: str, revoked_at: datetime, reason: str
    ) -> bool:
        key = _uuid_or_none(session_id)
        if key is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sessions SET revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (revoked_at, reason, key),
            ).fetchone()
        return row is not None

    def purge_sessions(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM sessions WHERE (revoked_at IS NOT NULL AND revoked_at < %s) OR expires_at < %s",
                (before, before),
            )
            deleted = cur.rowcount or 0
        if deleted:
            self.logger.info("sessions_purged", count=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    def get_second_factor(self, account_id: str) -> Optional[SecondFactorCredential]:
        key = _uuid_or_none(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM second_factor_credentials WHERE user_id = %s", (key,)
            ).fetchone()
        if not row:
            return None
        return SecondFactorCredential(
            user_id=str(row["user_id"]),
            secret=decrypt_secret(self._secret_cipher, row["secret"]),
            backup_code_hashes=list(safe_row_value(row, "backup_code_hashes") or []),
            used_backup_code_hashes=list(safe_row_value(row, "used_backup_code_hashes") or []),
            enabled=bool(row.get("enabled", False)),
            enabled_at=parse_datetime(row.get("enabled_at")),
            created_at=parse_datetime(row.get("created_at")) or utcnow(),
            updated_at=parse_datetime(row.get("updated_at")),
        )

    def save_second_factor(self, credential: SecondFactorCredential) -> SecondFactorCredential:
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO second_factor_credentials (
                        user_id, secret, backup_code_hashes, used_backup_code_hashes,
                        enabled, enabled_at, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        backup_code_hashes = EXCLUDED.backup_code_hashes,
                        used_backup_code_hashes = EXCLUDED.used_backup_code_hashes,
                        enabled = EXCLUDED.enabled,
                        enabled_at = EXCLUDED.enabled_at,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        credential.user_id,
                        encrypt_secret(self._secret_cipher, credential.secret),
                        list(credential.backup_code_hashes),
                        list(credential.used_backup_code_hashes),
                        credential.enabled,
                        credential.enabled_at,
                        credential.created_at,
                        now,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for second factor", {"account_id": credential.user_id}
            )
        credential.updated_at = now
        return credential

    def consume_backup_code(self, account_id: str, code_hash: str) -> Optional[int]:
        """Atomically remove one backup code hash; None when it was not present."""
        key = _uuid_or_none(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE second_factor_credentials
                SET backup_code_hashes = array_remove(backup_code_hashes, %s),
                    used_backup_code_hashes = array_append(used_backup_code_hashes, %s),
                    updated_at = now()
                WHERE user_id = %s AND %s = ANY(backup_code_hashes)
                RETURNING cardinality(backup_code_hashes) AS remaining
                """,
                (code_hash, code_hash, key, code_hash),
            ).fetchone()
        if not row:
            return None
        return int(row["remaining"])

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def _verification_token_from_row(self, row: Dict[str, Any]) -> VerificationToken:
        return VerificationToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            purpose=row["purpose"],
            token_hash=row["token_hash"],
            expires_at=parse_datetime(row["expires_at"]),
            created_at=parse_datetime(row.get("created_at")) or utcnow(),
            used_at=parse_datetime(row.get("used_at")),
        )

    def insert_verification_token(self, token: VerificationToken) -> VerificationToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO verification_tokens (id, user_id, purpose, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.purpose,
                        token.token_hash,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for verification token", {"account_id": token.user_id}
            )
        return token

    def get_verification_token(
        self, purpose: str, token_hash: str
    ) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM verification_tokens
                WHERE purpose = %s AND token_hash = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (purpose, token_hash),
            ).fetchone()
        return self._verification_token_from_row(row) if row else None

    def mark_verification_token_used(self, token_id: str, used_at: datetime) -> bool:
        key = _uuid_or_none(token_id)
        if key is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE verification_tokens SET used_at = %s WHERE id = %s AND used_at IS NULL RETURNING id",
                (used_at, key),
            ).fetchone()
        return row is not None
