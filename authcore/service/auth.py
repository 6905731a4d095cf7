from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

from authcore.logging import get_logger
from authcore.service import events as ev
from authcore.service.errors import (
    AccountNotLoginableError,
    BackupCodeExhaustedError,
    ConflictError,
    InvalidCredentialsError,
    InvalidSecondFactorCodeError,
    NotFoundError,
    SessionMismatchError,
    SessionNotFoundError,
    TokenRevokedError,
    ValidationError,
)
from authcore.service.events import EventDispatcher, SecurityEvent
from authcore.service.passwords import CredentialVerifier, check_password_policy
from authcore.service.sessions import SessionStore
from authcore.service.suspicious import SuspicionReport, score_sessions
from authcore.service.tokens import TokenManager, TokenPair
from authcore.service.totp import SecondFactorService, SecondFactorSetup, VerificationResult
from authcore.service.verification import EMAIL_VERIFICATION, VerificationCodes
from authcore.storage.common import generate_uuid
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    Account,
    DeviceInfo,
    SecondFactorCredential,
    Session,
    VerificationToken,
    utcnow,
)

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Allowed account status transitions; banned is terminal
ACCOUNT_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"active", "banned", "deactivated"}),
    "active": frozenset({"suspended", "banned", "deactivated"}),
    "suspended": frozenset({"active", "banned", "deactivated"}),
    "deactivated": frozenset({"active"}),
    "banned": frozenset(),
}

_SUSPICION_SEVERITY = {"high": "high", "medium": "warning", "low": "info"}


class AuthStore(Protocol):
    def create_account(
        self,
        email: str,
        *,
        status: str = "pending",
        user_type: str = "customer",
        verification_level: str = "unverified",
        meta: Optional[Dict] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account_status(
        self,
        account_id: str,
        status: str,
        *,
        verification_level: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> Optional[Account]: ...

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions(
        self,
        account_id: str,
        *,
        active_at: Optional[datetime] = None,
        created_since: Optional[datetime] = None,
    ) -> List[Session]: ...

    def touch_session(self, session_id: str, last_active_at: datetime) -> bool: ...

    def set_session_meta(self, session_id: str, meta: Dict) -> None: ...

    def revoke_session(self, session_id: str, revoked_at: datetime, reason: str) -> bool: ...

    def purge_sessions(self, before: datetime) -> int: ...

    def get_second_factor(self, account_id: str) -> Optional[SecondFactorCredential]: ...

    def save_second_factor(self, credential: SecondFactorCredential) -> SecondFactorCredential: ...

    def consume_backup_code(self, account_id: str, code_hash: str) -> Optional[int]: ...

    def insert_verification_token(self, token: VerificationToken) -> VerificationToken: ...

    def get_verification_token(
        self, purpose: str, token_hash: str
    ) -> Optional[VerificationToken]: ...

    def mark_verification_token_used(self, token_id: str, used_at: datetime) -> bool: ...


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Authenticated:
    account: Account
    session: Session
    tokens: TokenPair
    suspicion: SuspicionReport
    second_factor: Optional[VerificationResult] = None


@dataclass(frozen=True)
class SecondFactorRequired:
    account_id: str
    temp_token: str
    expires_in: int


@dataclass(frozen=True)
class Rejected:
    reason: str


LoginResult = Union[Authenticated, SecondFactorRequired, Rejected]


@dataclass(frozen=True)
class Refreshed:
    access_token: str
    expires_in: int
    session_id: str


@dataclass(frozen=True)
class Registration:
    account: Account
    verification_code: str
    expires_in: int


@dataclass
class AuthContext:
    account: Account
    session_id: Optional[str]
    device_id: Optional[str]
    jti: str
    expires_at: int
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def account_id(self) -> str:
        return self.account.id


class AuthService:
    """Sequences credential checks, second factor, sessions and tokens into auth flows."""

    def __init__(
        self,
        store: AuthStore,
        *,
        tokens: TokenManager,
        sessions: SessionStore,
        second_factor: SecondFactorService,
        verification: VerificationCodes,
        events: EventDispatcher,
        passwords: Optional[CredentialVerifier] = None,
        suspicious_window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.second_factor = second_factor
        self.verification = verification
        self.events = events
        self.passwords = passwords or CredentialVerifier()
        self.suspicious_window = suspicious_window
        self._clock = clock

    def _emit(
        self,
        name: str,
        account_id: Optional[str],
        *,
        severity: str = "info",
        notify: Optional[dict] = None,
        **payload: Any,
    ) -> None:
        self.events.emit(
            SecurityEvent(
                name=name,
                account_id=account_id,
                severity=severity,
                payload=payload,
                notify=notify or {},
            )
        )

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        return account

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def _hash_password(self, account_id: str, password: str) -> None:
        digest, algo = self.passwords.hash(password)
        self.store.save_password(account_id, digest, algo)

    def _check_password(self, account: Account, password: str) -> bool:
        record = self.store.get_password_record(account.id)
        if not record:
            logger.warning("password_record_missing", account_id=account.id)
            self.passwords.burn(password)
            return False
        stored_hash, algo = record
        if not self.passwords.verify(stored_hash, password, algo=algo):
            return False
        if self.passwords.needs_rehash(stored_hash):
            self._hash_password(account.id, password)
            logger.info("password_rehashed", account_id=account.id)
        return True

    def _check_credentials(self, email: str, password: str) -> Union[Account, Rejected]:
        """Each failure branch costs one hash verification and yields the same rejection."""
        account = self.store.get_account_by_email(email or "")
        if account is None:
            self.passwords.burn(password)
            self._emit(ev.LOGIN_FAILED, None, severity="warning", reason="unknown_account")
            return Rejected("invalid_credentials")
        if not self._check_password(account, password):
            self._emit(ev.LOGIN_FAILED, account.id, severity="warning", reason="bad_password")
            return Rejected("invalid_credentials")
        if not account.can_login():
            self._emit(
                ev.LOGIN_FAILED,
                account.id,
                severity="warning",
                reason="account_not_loginable",
                status=account.status,
            )
            return Rejected("invalid_credentials")
        return account

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(
        self, email: str, password: str, device: DeviceInfo, *, remember_me: bool = False
    ) -> LoginResult:
        checked = self._check_credentials(email, password)
        if isinstance(checked, Rejected):
            return checked
        account = checked

        if self.second_factor.is_enabled(account.id):
            temp = self.tokens.issue_second_factor_token(
                account.id,
                device_id=device.device_id,
                claims={"remember_me": remember_me},
            )
            self._emit(ev.SECOND_FACTOR_CHALLENGE, account.id, device_type=device.device_type)
            return SecondFactorRequired(
                account_id=account.id,
                temp_token=temp.token,
                expires_in=self.tokens.second_factor_ttl_seconds,
            )
        return await self._establish(account, device, remember_me=remember_me)

    async def login_with_second_factor(
        self,
        email: str,
        password: str,
        code: str,
        device: DeviceInfo,
        *,
        remember_me: bool = False,
    ) -> Authenticated:
        """Credentials and a TOTP/backup code in one call."""
        checked = self._check_credentials(email, password)
        if isinstance(checked, Rejected):
            raise InvalidCredentialsError("invalid email or password")
        verification = await self._require_second_factor(checked.id, code)
        return await self._establish(
            checked, device, remember_me=remember_me, second_factor=verification
        )

    async def complete_second_factor(
        self, temp_token: str, code: str, device: DeviceInfo
    ) -> Authenticated:
        """Exchange a second-factor token plus a valid code for a full session."""
        claims = await self.tokens.verify_second_factor_token(temp_token)
        account = self.store.get_account(claims["sub"])
        if account is None or not account.can_login():
            raise InvalidCredentialsError("invalid email or password")
        verification = await self._require_second_factor(account.id, code)
        # Single use: the challenge token cannot start a second session
        await self.tokens.revoke_jti(claims["jti"], claims["exp"])
        if claims.get("did"):
            device.device_id = claims["did"]
        return await self._establish(
            account,
            device,
            remember_me=bool(claims.get("remember_me")),
            second_factor=verification,
        )

    async def _require_second_factor(self, account_id: str, code: str) -> VerificationResult:
        try:
            return await self.second_factor.require(account_id, code)
        except (InvalidSecondFactorCodeError, BackupCodeExhaustedError) as exc:
            self._emit(
                ev.SECOND_FACTOR_FAILED, account_id, severity="high", reason=exc.error_code
            )
            raise

    async def _establish(
        self,
        account: Account,
        device: DeviceInfo,
        *,
        remember_me: bool,
        second_factor: Optional[VerificationResult] = None,
    ) -> Authenticated:
        session_id = generate_uuid()
        ttl = self.sessions.ttl_for(remember_me)
        pair = self.tokens.issue_pair(
            account.id,
            device.device_id,
            {"email": account.email, "user_type": account.user_type},
            session_id=session_id,
            refresh_ttl_seconds=int(ttl.total_seconds()),
        )
        session = await self.sessions.create(
            account.id,
            device,
            pair.refresh_token,
            remember_me,
            session_id=session_id,
            meta=pair.session_meta(),
        )
        suspicion = self._score_login(account, device)
        self._emit(
            ev.USER_LOGIN,
            account.id,
            session_id=session.id,
            device_type=device.device_type,
            platform=device.platform,
            suspicious=suspicion.suspicious,
            method=second_factor.method if second_factor else "password",
        )
        return Authenticated(
            account=account,
            session=session,
            tokens=pair,
            suspicion=suspicion,
            second_factor=second_factor,
        )

    def _score_login(self, account: Account, device: DeviceInfo) -> SuspicionReport:
        """Advisory only; a scoring failure never fails the login."""
        now = self._clock()
        try:
            recent = self.sessions.list_recent(account.id, now - self.suspicious_window)
            report = score_sessions(recent, now=now, window=self.suspicious_window)
        except Exception as exc:
            logger.warning("suspicious_activity_check_failed", account_id=account.id, error=str(exc))
            return SuspicionReport()
        if report.suspicious:
            self._emit(
                ev.SUSPICIOUS_LOGIN,
                account.id,
                severity=_SUSPICION_SEVERITY[report.risk_level],
                notify={"email": account.email},
                flags=report.flags,
                risk_level=report.risk_level,
                device_type=device.device_type,
                ip_address=device.ip_address,
            )
        return report

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> Refreshed:
        claims = await self.tokens.verify_refresh(refresh_token)
        session_id = claims.get("sid")
        if not session_id:
            raise SessionNotFoundError("session not found", status_code=401)
        session = await self.sessions.validate(session_id, refresh_token)
        if session is None:
            if await self.sessions.confirm_active(session_id) is not None:
                raise SessionMismatchError("refresh token does not match the session")
            raise SessionNotFoundError("session not found", status_code=401)
        if session.user_id != claims["sub"]:
            raise SessionMismatchError("refresh token does not match the session")
        account = self.store.get_account(claims["sub"])
        if account is None or not account.can_login():
            raise AccountNotLoginableError("account is not active")
        access = self.tokens.issue_access(
            account.id,
            device_id=claims.get("did"),
            session_id=session.id,
            claims={"email": account.email, "user_type": account.user_type},
        )
        await self.sessions.record_access_token(session.id, access.jti, access.expires_at)
        logger.info("access_token_refreshed", account_id=account.id, session_id=session.id)
        return Refreshed(
            access_token=access.token,
            expires_in=self.tokens.access_ttl_seconds,
            session_id=session.id,
        )

    async def authenticate(self, access_token: str) -> AuthContext:
        """Verify a bearer token and the session it is bound to."""
        claims = await self.tokens.verify_access(access_token)
        session_id = claims.get("sid")
        if session_id:
            if await self.sessions.confirm_active(session_id) is None:
                raise TokenRevokedError("session is no longer active")
        account = self.store.get_account(claims["sub"])
        if account is None or not account.can_login():
            raise AccountNotLoginableError("account is not active")
        return AuthContext(
            account=account,
            session_id=session_id,
            device_id=claims.get("did"),
            jti=claims["jti"],
            expires_at=int(claims["exp"]),
            claims=claims,
        )

    async def logout(
        self,
        ctx: AuthContext,
        *,
        all_devices: bool = False,
        device_id: Optional[str] = None,
    ) -> int:
        if all_devices:
            revoked = await self.sessions.revoke_all(ctx.account_id, reason="logout_all")
            self._emit(ev.SESSIONS_REVOKED, ctx.account_id, count=revoked, reason="logout_all")
        else:
            revoked = 0
            target_device = device_id or ctx.device_id
            targets = [
                s
                for s in self.sessions.list_active(ctx.account_id)
                if (device_id and s.device_id == target_device)
                or (not device_id and s.id == ctx.session_id)
            ]
            for session in targets:
                if await self.sessions.revoke(session.id, reason="logout"):
                    revoked += 1
                    self._emit(ev.SESSION_REVOKED, ctx.account_id, session_id=session.id, reason="logout")
        await self.tokens.revoke_jti(ctx.jti, ctx.expires_at)
        return revoked

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def list_sessions(self, account_id: str) -> List[Session]:
        return self.sessions.list_active(account_id)

    def session_stats(self, account_id: str) -> Dict[str, Any]:
        return self.sessions.stats(account_id)

    async def current_session(self, ctx: AuthContext) -> Session:
        if not ctx.session_id:
            raise SessionNotFoundError("current session not found")
        session = await self.sessions.confirm_active(ctx.session_id)
        if session is None or session.user_id != ctx.account_id:
            raise SessionNotFoundError("current session not found")
        return session

    async def extend_current_session(self, ctx: AuthContext) -> Session:
        """Record activity on the caller's session; expiry is unchanged."""
        session = await self.current_session(ctx)
        touched = await self.sessions.touch(session.id)
        if touched is None:
            raise SessionNotFoundError("current session not found")
        return touched

    def suspicious_sessions(
        self, account_id: str, current_session_id: Optional[str] = None
    ) -> Tuple[SuspicionReport, List[Session]]:
        """Score the account's recent sessions; flagged sessions exclude the caller's own."""
        now = self._clock()
        recent = self.sessions.list_recent(account_id, now - self.suspicious_window)
        report = score_sessions(recent, now=now, window=self.suspicious_window)
        if not report.suspicious:
            return report, []
        flagged = [
            s for s in self.sessions.list_active(account_id) if s.id != current_session_id
        ]
        self._emit(
            ev.SUSPICIOUS_SESSIONS_DETECTED,
            account_id,
            severity=_SUSPICION_SEVERITY[report.risk_level],
            flags=report.flags,
            risk_level=report.risk_level,
            flagged_count=len(flagged),
        )
        return report, flagged

    async def revoke_session(self, account_id: str, session_id: str) -> None:
        session = self.store.get_session(session_id)
        if session is None or session.user_id != account_id or not session.is_active(self._clock()):
            raise SessionNotFoundError("session not found")
        await self.sessions.revoke(session_id, reason="revoked_by_user")
        self._emit(ev.SESSION_REVOKED, account_id, session_id=session_id, reason="revoked_by_user")

    async def revoke_other_sessions(self, account_id: str, current_session_id: Optional[str]) -> int:
        revoked = await self.sessions.revoke_all(
            account_id, except_session_id=current_session_id, reason="revoked_by_user"
        )
        self._emit(ev.SESSIONS_REVOKED, account_id, count=revoked, reason="revoked_by_user")
        return revoked

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    async def setup_second_factor(self, account_id: str) -> SecondFactorSetup:
        account = self._require_account(account_id)
        return await self.second_factor.setup(account.id, account.email)

    async def enable_second_factor(self, account_id: str, code: str) -> None:
        account = self._require_account(account_id)
        try:
            await self.second_factor.enable(account.id, code)
        except InvalidSecondFactorCodeError:
            self._emit(ev.SECOND_FACTOR_FAILED, account.id, severity="warning", reason="enable")
            raise
        self._emit(ev.SECOND_FACTOR_ENABLED, account.id, notify={"email": account.email})

    async def disable_second_factor(self, account_id: str, code: str) -> VerificationResult:
        account = self._require_account(account_id)
        try:
            result = await self.second_factor.disable(account.id, code)
        except (InvalidSecondFactorCodeError, BackupCodeExhaustedError) as exc:
            self._emit(ev.SECOND_FACTOR_FAILED, account.id, severity="high", reason=exc.error_code)
            raise
        self._emit(
            ev.SECOND_FACTOR_DISABLED,
            account.id,
            severity="warning",
            notify={"email": account.email},
            method=result.method,
        )
        return result

    async def verify_second_factor(self, account_id: str, code: str) -> VerificationResult:
        return await self._require_second_factor(account_id, code)

    async def regenerate_backup_codes(self, account_id: str, code: str) -> List[str]:
        account = self._require_account(account_id)
        try:
            codes = await self.second_factor.regenerate(account.id, code)
        except InvalidSecondFactorCodeError:
            self._emit(ev.SECOND_FACTOR_FAILED, account.id, severity="warning", reason="regenerate")
            raise
        self._emit(ev.BACKUP_CODES_REGENERATED, account.id, count=len(codes))
        return codes

    def second_factor_status(self, account_id: str) -> dict:
        self._require_account(account_id)
        return self.second_factor.status(account_id)

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    async def register_account(
        self, email: str, password: str, *, user_type: str = "customer"
    ) -> Registration:
        normalized = (email or "").strip().lower()
        if not _EMAIL_RE.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        check = check_password_policy(password, email=normalized)
        if not check.is_valid:
            raise ValidationError(
                "password does not meet requirements",
                detail={"field": "password", "errors": check.errors},
            )
        try:
            account = self.store.create_account(normalized, status="pending", user_type=user_type)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        self._hash_password(account.id, password)
        code = self.verification.issue(account.id, EMAIL_VERIFICATION)
        self._emit(
            ev.ACCOUNT_REGISTERED,
            account.id,
            notify={"email": account.email, "verification_code": code},
            user_type=user_type,
        )
        return Registration(
            account=account,
            verification_code=code,
            expires_in=int(self.verification.ttl.total_seconds()),
        )

    async def confirm_email(self, email: str, code: str) -> Account:
        account = self.store.get_account_by_email(email or "")
        if (
            account is None
            or account.status != "pending"
            or not self.verification.consume(account.id, code, EMAIL_VERIFICATION)
        ):
            raise ValidationError("invalid or expired verification code", detail={"field": "code"})
        updated = self.store.update_account_status(
            account.id,
            "active",
            verification_level="email_verified",
            email_verified_at=self._clock(),
        )
        self._emit(ev.ACCOUNT_STATUS_CHANGED, account.id, previous="pending", status="active")
        return updated

    async def transition_account(self, account_id: str, status: str) -> Account:
        account = self._require_account(account_id)
        allowed = ACCOUNT_TRANSITIONS.get(account.status, frozenset())
        if status not in allowed:
            raise ConflictError(
                f"cannot move account from {account.status} to {status}",
                detail={"from": account.status, "to": status},
            )
        verification_level = None
        email_verified_at = None
        if account.status == "pending" and status == "active" and account.verification_level == "unverified":
            # Activating a pending account vouches for its email
            verification_level = "email_verified"
            email_verified_at = self._clock()
        updated = self.store.update_account_status(
            account.id,
            status,
            verification_level=verification_level,
            email_verified_at=email_verified_at,
        )
        if account.status == "active":
            await self.sessions.revoke_all(account.id, reason=f"account_{status}")
        self._emit(
            ev.ACCOUNT_STATUS_CHANGED,
            account.id,
            severity="warning" if status in {"suspended", "banned"} else "info",
            previous=account.status,
            status=status,
        )
        return updated

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
    ) -> int:
        account = self._require_account(account_id)
        if not self._check_password(account, current_password):
            raise InvalidCredentialsError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "new_password"},
            )
        check = check_password_policy(new_password, email=account.email)
        if not check.is_valid:
            raise ValidationError(
                "password does not meet requirements",
                detail={"field": "new_password", "errors": check.errors},
            )
        self._hash_password(account.id, new_password)
        revoked = await self.sessions.revoke_all(
            account.id, except_session_id=current_session_id, reason="password_changed"
        )
        self._emit(
            ev.PASSWORD_CHANGED,
            account.id,
            severity="warning",
            notify={"email": account.email},
            sessions_revoked=revoked,
        )
        return revoked
