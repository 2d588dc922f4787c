from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on:

    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
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
    """Credentials missing, wrong, or tied to an unusable account (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Token or session expired or revoked (401).

    Clients see the same code as any other authentication failure.
    """


class ForbiddenError(ServiceError):
    """Authenticated but lacking the required permission bits (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Resource missing or outside the caller's venue/user scope (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate or state-conflicting request (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Request arrived before the minimum interval elapsed (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str, *, retry_after_seconds: Optional[int] = None, **kwargs
    ) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        if retry_after_seconds is not None:
            detail["retry_after_seconds"] = retry_after_seconds
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class ServerError(ServiceError):
    """Infrastructure failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
