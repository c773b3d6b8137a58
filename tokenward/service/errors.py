from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that callers can branch on:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - invalid_credentials (401)
    - account_locked (423)
    - account_inactive (403)
    - token_expired (401)
    - token_invalid (401)
    - session_not_found (401)
    - session_inactive (401)
    - rate_limited (429)
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


class AuthenticationError(ServiceError):
    """Authentication missing from the request (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed, e.g. a non-admin on an admin route (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class InvalidCredentialsError(ServiceError):
    """Unknown account or wrong password; the two are never distinguished."""

    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed logins; the lock expires on its own (423)."""

    status_code = 423
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "account temporarily locked",
        *,
        lock_until: Optional[datetime] = None,
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        if lock_until is not None:
            detail.setdefault("lock_until", lock_until.isoformat())
        super().__init__(message, detail=detail, **kwargs)
        self.lock_until = lock_until


class AccountInactiveError(ServiceError):
    """Account has been deactivated (403)."""
    status_code = 403
    error_code = "account_inactive"


class TokenExpiredError(ServiceError):
    """Token signature is valid but its lifetime has elapsed.

    ``token_kind`` tells the caller whether to attempt a refresh (access) or
    force a new login (refresh).
    """

    status_code = 401
    error_code = "token_expired"

    def __init__(self, token_kind: str, message: Optional[str] = None, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("token_kind", token_kind)
        super().__init__(message or f"{token_kind} token expired", detail=detail, **kwargs)
        self.token_kind = token_kind


class TokenInvalidError(ServiceError):
    """Malformed token, bad signature, or wrong token type (401)."""
    status_code = 401
    error_code = "token_invalid"


class SessionNotFoundError(ServiceError):
    """No live session matches the presented token (401)."""
    status_code = 401
    error_code = "session_not_found"


class SessionInactiveError(ServiceError):
    """Session exists but can no longer authenticate (401)."""
    status_code = 401
    error_code = "session_inactive"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many requests",
        *,
        retry_after_seconds: int = 0,
        endpoint_class: Optional[str] = None,
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after_seconds", retry_after_seconds)
        if endpoint_class:
            detail.setdefault("type", endpoint_class)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_seconds = retry_after_seconds
        self.endpoint_class = endpoint_class


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidDurationFormat(ValueError):
    """Duration string does not match ``<integer><s|m|h|d>``.

    Raised while settings are validated at startup, never per request.
    """

    def __init__(self, value: object) -> None:
        super().__init__(f"invalid duration format: {value!r}")
        self.value = value


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountInactiveError",
    "TokenExpiredError",
    "TokenInvalidError",
    "SessionNotFoundError",
    "SessionInactiveError",
    "RateLimitedError",
    "ServerError",
    "InvalidDurationFormat",
]
