"""Tagged outcomes returned by the service layer.

Handlers return a ``Result`` instead of raising for expected failures. The
HTTP layer calls ``unwrap()`` which turns a failure into the matching
``ServiceError`` so the error envelope stays uniform.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from venueauth.logging import get_logger
from venueauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ServiceError,
    SessionExpiredError,
    ValidationError,
)

logger = get_logger(__name__)

T = TypeVar("T")


class ResultKind(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    EXPIRED = "expired"
    REVOKED = "revoked"
    INVALID = "invalid"
    FAILURE = "failure"


_ERROR_FOR_KIND = {
    ResultKind.NOT_FOUND: NotFoundError,
    ResultKind.UNAUTHORIZED: AuthenticationError,
    ResultKind.FORBIDDEN: ForbiddenError,
    ResultKind.CONFLICT: ConflictError,
    ResultKind.EXPIRED: SessionExpiredError,
    ResultKind.REVOKED: SessionExpiredError,
    ResultKind.INVALID: ValidationError,
    ResultKind.FAILURE: ServerError,
}


@dataclass(frozen=True)
class Result(Generic[T]):
    kind: ResultKind
    value: Optional[T] = None
    message: Optional[str] = None
    retry_after_seconds: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.kind is ResultKind.OK

    @classmethod
    def success(cls, value: T = None, message: Optional[str] = None) -> "Result[T]":
        return cls(ResultKind.OK, value=value, message=message)

    @classmethod
    def not_found(cls, message: str) -> "Result[T]":
        return cls(ResultKind.NOT_FOUND, message=message)

    @classmethod
    def unauthorized(cls, message: str) -> "Result[T]":
        return cls(ResultKind.UNAUTHORIZED, message=message)

    @classmethod
    def forbidden(cls, message: str) -> "Result[T]":
        return cls(ResultKind.FORBIDDEN, message=message)

    @classmethod
    def conflict(cls, message: str) -> "Result[T]":
        return cls(ResultKind.CONFLICT, message=message)

    @classmethod
    def rate_limited(cls, message: str, retry_after_seconds: int) -> "Result[T]":
        return cls(
            ResultKind.RATE_LIMITED,
            message=message,
            retry_after_seconds=retry_after_seconds,
        )

    @classmethod
    def expired(cls, message: str) -> "Result[T]":
        return cls(ResultKind.EXPIRED, message=message)

    @classmethod
    def revoked(cls, message: str) -> "Result[T]":
        return cls(ResultKind.REVOKED, message=message)

    @classmethod
    def invalid(cls, message: str, value: T = None) -> "Result[T]":
        return cls(ResultKind.INVALID, value=value, message=message)

    @classmethod
    def failure(cls, message: str) -> "Result[T]":
        return cls(ResultKind.FAILURE, message=message)

    def to_error(self) -> ServiceError:
        if self.kind is ResultKind.RATE_LIMITED:
            return RateLimitedError(
                self.message or "rate limited",
                retry_after_seconds=self.retry_after_seconds,
            )
        error_cls = _ERROR_FOR_KIND.get(self.kind, ServerError)
        return error_cls(self.message or self.kind.value)

    def unwrap(self) -> T:
        if not self.ok:
            raise self.to_error()
        return self.value


def handler_boundary(
    message: str,
) -> Callable[[Callable[..., Awaitable[Result[Any]]]], Callable[..., Awaitable[Result[Any]]]]:
    """Convert unexpected exceptions raised by an async handler into ``Result.failure``.

    The exception is logged with whatever identifiers the handler was called
    with (user_id, venue_id, sub_user_id) and never reaches the caller.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                context = {
                    key: kwargs[key]
                    for key in ("user_id", "venue_id", "sub_user_id", "session_id")
                    if kwargs.get(key) is not None
                }
                logger.exception(
                    "handler_failed",
                    handler=func.__qualname__,
                    error_type=type(exc).__name__,
                    **context,
                )
                return Result.failure(message)

        return wrapper

    return decorator


__all__ = ["Result", "ResultKind", "handler_boundary"]
