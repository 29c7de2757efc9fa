from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
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


class InvalidCredentialsError(ValidationError):
    """Email/password pair rejected; the message never says which part (400)."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Access token missing, malformed, badly signed or expired (401)."""
    pass


class SessionInvalidError(AuthenticationError):
    """Refresh session missing or past its expiry (401)."""

    def __init__(self, message: str, *, reason: str, **kwargs) -> None:
        detail = {"reason": reason, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)
        self.reason = reason


class SessionExpiredError(AuthenticationError):
    """Client-side: the refresh attempt failed and local credentials were dropped."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found, or not owned by the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    """An account with this email already exists (409)."""

    def __init__(self, message: str = "email already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AuthenticationError",
    "InvalidTokenError",
    "SessionInvalidError",
    "SessionExpiredError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "ServerError",
]
