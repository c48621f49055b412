from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (400)
    - invalid_token (400)
    - unauthorized (401)
    - token_expired (401)
    - email_not_verified (403)
    - account_suspended (403)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - server_error (500)
    - delivery_failed (502)
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


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; deliberately indistinguishable."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Session credential is malformed or its signature does not verify."""

    def __init__(self, message: str = "invalid session token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    """Session credential is past its expiry."""
    error_code = "token_expired"

    def __init__(self, message: str = "session token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"

    def __init__(
        self,
        message: str = "please verify your email before logging in",
        **kwargs,
    ) -> None:
        kwargs.setdefault("detail", {"needs_verification": True})
        super().__init__(message, **kwargs)


class AccountSuspendedError(ForbiddenError):
    error_code = "account_suspended"

    def __init__(
        self,
        message: str = "account is suspended; contact an administrator",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed logins; the account is temporarily locked (423)."""
    status_code = 423
    error_code = "account_locked"


class TokenInvalidOrExpiredError(ServiceError):
    """Verification or reset token is unknown, consumed, or expired (400)."""
    status_code = 400
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    def __init__(self, message: str = "no account found for this email", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    def __init__(
        self, message: str = "an account with this email already exists", **kwargs
    ) -> None:
        kwargs.setdefault("detail", {"field": "email"})
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DeliveryFailed(ServiceError):
    """The email collaborator could not deliver a message (502).

    Raised for password-reset requests; on registration and resend it is
    attached to the result as a warning instead.
    """
    status_code = 502
    error_code = "delivery_failed"

    def __init__(self, message: str = "email could not be sent", *, kind: str = "", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.kind = kind


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "ForbiddenError",
    "EmailNotVerifiedError",
    "AccountSuspendedError",
    "AccountLockedError",
    "TokenInvalidOrExpiredError",
    "NotFoundError",
    "UserNotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "ServerError",
    "DeliveryFailed",
]
