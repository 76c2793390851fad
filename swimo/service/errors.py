from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Business failure carrying the HTTP status and envelope code it surfaces as.

    Subclasses pin ``status_code`` and ``error_code``; callers may override
    either per instance.
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


class InvalidTokenError(AuthenticationError):
    """Access token is structurally malformed or carries an unusable payload."""


class InvalidSignatureError(AuthenticationError):
    """Access token signature does not match its content."""


class ExpiredTokenError(AuthenticationError):
    """Access token is well formed and authentic but past its expiry."""


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""


class ExpiredRefreshTokenError(AuthenticationError):
    """Refresh credential is unknown, expired, revoked or already used."""


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    pass


class GuestDisabledError(ForbiddenError):
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountExistsError(ConflictError):
    pass


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class GuestRateLimitedError(RateLimitedError):
    pass


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class OperationCancelledError(ServiceError):
    """The caller's deadline elapsed before the store answered (503)."""
    status_code = 503
    error_code = "unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "InvalidSignatureError",
    "ExpiredTokenError",
    "InvalidCredentialsError",
    "ExpiredRefreshTokenError",
    "ForbiddenError",
    "AccountLockedError",
    "GuestDisabledError",
    "ConflictError",
    "AccountExistsError",
    "RateLimitedError",
    "GuestRateLimitedError",
    "ServerError",
    "OperationCancelledError",
]
