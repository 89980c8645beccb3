"""Error taxonomy for listcache."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    CACHE_MISS = "CACHE_MISS"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    TRANSFORM_FAILED = "TRANSFORM_FAILED"
    MUTATION_FAILED = "MUTATION_FAILED"
    API_ERROR = "API_ERROR"


class ListCacheError(Exception):
    """Base class for every error raised by listcache.

    ``recoverable`` tells the caller whether retrying the same operation can
    succeed. Programming errors (cache misses, broken invariants, raising
    transforms) are not recoverable and must propagate.
    """

    code: ErrorCode = ErrorCode.INVARIANT_VIOLATION
    recoverable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "recoverable": self.recoverable,
            }
        }


class CacheMissError(ListCacheError, LookupError):
    """An operation that needs a populated entry found none."""

    code = ErrorCode.CACHE_MISS

    def __init__(self, key: Any) -> None:
        super().__init__(f"No cache entry for key {key!r}")
        self.key = key


class InvariantViolation(ListCacheError, ValueError):
    """An entry broke the unique-id invariant, or a transform dropped items."""

    code = ErrorCode.INVARIANT_VIOLATION


class TransformError(ListCacheError):
    """The optimistic transform raised. The cache was not touched."""

    code = ErrorCode.TRANSFORM_FAILED

    def __init__(self, key: Any, cause: BaseException) -> None:
        super().__init__(f"Transform for key {key!r} failed: {cause}")
        self.key = key
        self.__cause__ = cause


class ApiError(ListCacheError):
    """The backend answered with a non-2xx status."""

    code = ErrorCode.API_ERROR
    recoverable = True

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class MutationFailed(ListCacheError):
    """send_to_server() failed and the optimistic write was rolled back."""

    code = ErrorCode.MUTATION_FAILED
    recoverable = True

    def __init__(self, cause: BaseException, message: str | None = None) -> None:
        super().__init__(message or user_message(cause))
        self.cause = cause
        self.__cause__ = cause


def user_message(error: BaseException, default: str = "Request failed") -> str:
    """Human-readable text for a failure, suitable for a notification."""
    if isinstance(error, ListCacheError):
        return error.message
    text = str(error)
    return text or default
