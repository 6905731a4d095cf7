from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from authcore.api.schemas import (
    AccountResponse,
    BackupCodesResponse,
    CurrentSessionResponse,
    DeviceFields,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    PasswordChangeRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    SecondFactorChallengeResponse,
    SecondFactorCodeRequest,
    SecondFactorLoginRequest,
    SecondFactorSetupResponse,
    SecondFactorStatusResponse,
    SecondFactorVerifyResponse,
    SessionListResponse,
    SessionResponse,
    SuspicionResponse,
    SuspiciousSessionsResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    ValidateResponse,
)
from authcore.logging import get_logger
from authcore.service.auth import (
    AuthContext,
    Authenticated,
    Rejected,
    SecondFactorRequired,
)
from authcore.service.errors import InvalidCredentialsError
from authcore.service.runtime import check_rate_limit, get_runtime
from authcore.service.sessions import device_fingerprint
from authcore.service.totp import VerificationResult
from authcore.storage.models import Account, DeviceInfo, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/auth")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise 429.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": info.reset_seconds},
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device_from_request(
    request: Request, fields: DeviceFields, device_id_header: Optional[str]
) -> DeviceInfo:
    ip_address = _client_ip(request)
    user_agent = request.headers.get("user-agent")
    device_id = (device_id_header or "").strip()[:128] or device_fingerprint(
        user_agent,
        request.headers.get("accept-language"),
        request.headers.get("accept-encoding"),
        ip_address,
    )
    return DeviceInfo(
        device_id=device_id,
        device_type=fields.device_type,
        platform=fields.platform,
        app_version=fields.app_version,
        push_token=fields.push_token,
        ip_address=ip_address,
        location=fields.location,
        user_agent=user_agent[:512] if user_agent else None,
    )


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    return await runtime.auth.authenticate(token.strip())


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        status=account.status,
        verification_level=account.verification_level,
        user_type=account.user_type,
        created_at=account.created_at,
        email_verified_at=account.email_verified_at,
    )


def _session_response(session: Session, current_session_id: Optional[str]) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        device_id=session.device_id,
        device_type=session.device_type,
        platform=session.platform,
        app_version=session.app_version,
        ip_address=session.ip_address,
        location=session.location,
        created_at=session.created_at,
        last_active_at=session.last_active_at,
        expires_at=session.expires_at,
        current=session.id == current_session_id,
    )


def _backup_code_warning(result: Optional[VerificationResult]) -> Optional[str]:
    if result is None or not result.low_on_backup_codes:
        return None
    if result.remaining_backup_codes == 0:
        return "No backup codes remaining. Regenerate them now."
    return (
        f"Only {result.remaining_backup_codes} backup codes remaining. "
        "Consider regenerating them."
    )


def _authenticated_response(result: Authenticated) -> LoginResponse:
    second_factor = result.second_factor
    return LoginResponse(
        account=_account_response(result.account),
        tokens=TokenPairResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.access_ttl,
            session_id=result.session.id,
            session_expires_at=result.session.expires_at,
        ),
        security=SuspicionResponse(**result.suspicion.to_dict()),
        backup_codes_remaining=second_factor.remaining_backup_codes if second_factor else None,
        warning=_backup_code_warning(second_factor),
    )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a pending account and e-mail a verification code."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    registration = await runtime.auth.register_account(
        body.email, body.password, user_type=body.user_type
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            account=_account_response(registration.account),
            verification_expires_in=registration.expires_in,
        ),
    )


@router.post("/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:email:{body.email}",
        runtime.settings.second_factor_rate_limit_per_minute,
        60,
    )
    account = await runtime.auth.confirm_email(body.email, body.code)
    return Envelope(status="ok", data=_account_response(account))


# ---------------------------------------------------------------------------
# Login and tokens
# ---------------------------------------------------------------------------


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    x_device_id: Optional[str] = Header(None, alias="X-Device-ID"),
):
    """Authenticate with email and password.

    Returns a token pair, or a short-lived second-factor token when the
    account has two-factor authentication enabled.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    device = _device_from_request(request, body, x_device_id)
    result = await runtime.auth.login(
        body.email, body.password, device, remember_me=body.remember_me
    )
    if isinstance(result, Rejected):
        logger.info("login_rejected", reason=result.reason, device_type=device.device_type)
        raise InvalidCredentialsError("invalid email or password")
    if isinstance(result, SecondFactorRequired):
        return Envelope(
            status="ok",
            data=SecondFactorChallengeResponse(
                temp_token=result.temp_token, expires_in=result.expires_in
            ),
        )
    return Envelope(status="ok", data=_authenticated_response(result))


@router.post("/2fa/login", response_model=Envelope, tags=["2fa"])
async def login_second_factor(
    body: SecondFactorLoginRequest,
    request: Request,
    response: Response,
    x_device_id: Optional[str] = Header(None, alias="X-Device-ID"),
):
    """Complete a login with a TOTP or backup code."""
    runtime = get_runtime()
    subject = body.email or _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"2fa:login:{subject}",
        runtime.settings.second_factor_rate_limit_per_minute,
        60,
        response=response,
    )
    device = _device_from_request(request, body, x_device_id)
    if body.temp_token:
        result = await runtime.auth.complete_second_factor(body.temp_token, body.code, device)
    else:
        result = await runtime.auth.login_with_second_factor(
            body.email, body.password, body.code, device, remember_me=body.remember_me
        )
    return Envelope(status="ok", data=_authenticated_response(result))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        response=response,
    )
    refreshed = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=refreshed.access_token, expires_in=refreshed.expires_in
        ),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    body = body or LogoutRequest()
    revoked = await runtime.auth.logout(
        principal, all_devices=body.all_devices, device_id=body.device_id
    )
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.get("/validate", response_model=Envelope, tags=["auth"])
async def validate_token(principal: AuthContext = Depends(get_auth_context)):
    return Envelope(
        status="ok",
        data=ValidateResponse(
            account=_account_response(principal.account),
            session_id=principal.session_id,
            device_id=principal.device_id,
            expires_at=datetime.fromtimestamp(principal.expires_at, tz=timezone.utc),
        ),
    )


@router.post("/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_auth_context),
):
    """Change the current account's password and sign out every other session."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.account_id}",
        limit=5,
        window_seconds=300,
    )
    revoked = await runtime.auth.change_password(
        principal.account_id,
        body.current_password,
        body.new_password,
        current_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"status": "changed", "sessions_revoked": revoked})


# ---------------------------------------------------------------------------
# Second factor
# ---------------------------------------------------------------------------


@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_second_factor(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    setup = await runtime.auth.setup_second_factor(principal.account_id)
    return Envelope(
        status="ok",
        data=SecondFactorSetupResponse(
            secret=setup.secret,
            provisioning_uri=setup.provisioning_uri,
            backup_codes=setup.backup_codes,
        ),
    )


@router.post("/2fa/enable", response_model=Envelope, tags=["2fa"])
async def enable_second_factor(
    body: SecondFactorCodeRequest, principal: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:enable:{principal.account_id}",
        runtime.settings.second_factor_rate_limit_per_minute,
        60,
    )
    await runtime.auth.enable_second_factor(principal.account_id, body.code)
    return Envelope(status="ok", data={"enabled": True})


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_second_factor(
    body: SecondFactorCodeRequest, principal: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:disable:{principal.account_id}",
        runtime.settings.second_factor_rate_limit_per_minute,
        60,
    )
    await runtime.auth.disable_second_factor(principal.account_id, body.code)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_second_factor(
    body: SecondFactorCodeRequest, principal: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:verify:{principal.account_id}",
        runtime.settings.second_factor_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.verify_second_factor(principal.account_id, body.code)
    return Envelope(
        status="ok",
        data=SecondFactorVerifyResponse(
            verified=result.verified,
            method=result.method,
            backup_codes_remaining=result.remaining_backup_codes,
            warning=_backup_code_warning(result),
        ),
    )


@router.post("/2fa/regenerate-backup-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(
    body: SecondFactorCodeRequest, principal: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:regenerate:{principal.account_id}",
        runtime.settings.second_factor_rate_limit_per_minute,
        60,
    )
    codes = await runtime.auth.regenerate_backup_codes(principal.account_id, body.code)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.get("/2fa/status", response_model=Envelope, tags=["2fa"])
async def second_factor_status(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    status = runtime.auth.second_factor_status(principal.account_id)
    return Envelope(status="ok", data=SecondFactorStatusResponse(**status))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal.account_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[_session_response(s, principal.session_id) for s in sessions]
        ),
    )


@router.get("/sessions/stats", response_model=Envelope, tags=["sessions"])
async def session_stats(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.session_stats(principal.account_id))


@router.get("/sessions/current", response_model=Envelope, tags=["sessions"])
async def current_session(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    session = await runtime.auth.current_session(principal)
    return Envelope(
        status="ok",
        data=CurrentSessionResponse(
            **_session_response(session, principal.session_id).model_dump(exclude={"current"}),
            token_expires_at=datetime.fromtimestamp(principal.expires_at, tz=timezone.utc),
        ),
    )


@router.post("/sessions/current/extend", response_model=Envelope, tags=["sessions"])
async def extend_current_session(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    session = await runtime.auth.extend_current_session(principal)
    return Envelope(status="ok", data={"last_active_at": session.last_active_at.isoformat()})


@router.get("/sessions/suspicious", response_model=Envelope, tags=["sessions"])
async def suspicious_sessions(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    report, flagged = runtime.auth.suspicious_sessions(
        principal.account_id, principal.session_id
    )
    return Envelope(
        status="ok",
        data=SuspiciousSessionsResponse(
            **report.to_dict(),
            session_count=report.session_count,
            items=[_session_response(s, principal.session_id) for s in flagged],
        ),
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.account_id, session_id)
    return Envelope(status="ok", data={"revoked": session_id})


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_auth_context)):
    """Sign out every session except the one making the request."""
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_other_sessions(
        principal.account_id, principal.session_id
    )
    return Envelope(status="ok", data={"sessions_revoked": revoked})
