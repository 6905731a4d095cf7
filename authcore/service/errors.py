from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code. The generic codes are:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Authentication failures use the narrower codes of the subclasses below.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# ---------------------------------------------------------------------------
# Authentication taxonomy
# ---------------------------------------------------------------------------


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, wrong password or non-loginable account at login."""
    error_code = "invalid_credentials"


class AccountNotLoginableError(ServiceError):
    """Account exists but is inactive or unverified (403)."""
    status_code = 403
    error_code = "account_not_loginable"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class TokenMalformedError(AuthenticationError):
    error_code = "token_malformed"


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"


class WrongTokenKindError(AuthenticationError):
    error_code = "wrong_token_kind"


class SessionNotFoundError(ServiceError):
    """Session missing, revoked or expired (404; 401 on the refresh path)."""
    status_code = 404
    error_code = "session_not_found"


class SessionMismatchError(AuthenticationError):
    """Presented token does not match the session it names."""
    error_code = "session_mismatch"


class SecondFactorRequiredError(AuthenticationError):
    error_code = "second_factor_required"


class InvalidSecondFactorCodeError(AuthenticationError):
    error_code = "invalid_second_factor_code"


class BackupCodeExhaustedError(AuthenticationError):
    """The last backup code was used and no TOTP code was supplied."""
    error_code = "backup_code_exhausted"


TOKEN_ERRORS = (
    TokenExpiredError,
    TokenMalformedError,
    TokenRevokedError,
    WrongTokenKindError,
    SecondFactorRequiredError,
)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentialsError",
    "AccountNotLoginableError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenRevokedError",
    "WrongTokenKindError",
    "SessionNotFoundError",
    "SessionMismatchError",
    "SecondFactorRequiredError",
    "InvalidSecondFactorCodeError",
    "BackupCodeExhaustedError",
    "TOKEN_ERRORS",
]
