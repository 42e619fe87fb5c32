from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Failure categories surfaced by the store.

    The retry layer acts on THROTTLED and UNAVAILABLE; everything else is
    terminal for a single operation.
    """

    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    PRECONDITION_FAILED = "precondition_failed"
    PERMISSION_DENIED = "permission_denied"
    THROTTLED = "throttled"
    UNAVAILABLE = "unavailable"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    INTERNAL = "internal"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.THROTTLED, ErrorKind.UNAVAILABLE)


class KvStoreError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.code = code
        self.context = dict(context or {})
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "status_code": self.status_code,
            "code": self.code,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.kind.name}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(kind={self.kind.name}, "
            f"message={self.message!r}, status_code={self.status_code!r})"
        )

    @classmethod
    def invalid_argument(cls, message: str, **context: Any) -> KvStoreError:
        return cls(ErrorKind.INVALID_ARGUMENT, message, context=context)

    @classmethod
    def unavailable(cls, message: str, cause: BaseException | None = None, **context: Any) -> KvStoreError:
        return cls(ErrorKind.UNAVAILABLE, message, cause=cause, context=context)

    @classmethod
    def permission_denied(cls, message: str, **context: Any) -> KvStoreError:
        return cls(ErrorKind.PERMISSION_DENIED, message, context=context)

    @classmethod
    def deadline_exceeded(cls, message: str, **context: Any) -> KvStoreError:
        return cls(ErrorKind.DEADLINE_EXCEEDED, message, context=context)

    @classmethod
    def internal(cls, message: str, cause: BaseException | None = None, **context: Any) -> KvStoreError:
        return cls(ErrorKind.INTERNAL, message, cause=cause, context=context)


# S3 error codes whose HTTP status alone would be misclassified.
_CODE_KINDS: dict[str, ErrorKind] = {
    "RequestTimeout": ErrorKind.UNAVAILABLE,
    "ConditionalRequestConflict": ErrorKind.UNAVAILABLE,
    "SlowDown": ErrorKind.THROTTLED,
    "ExpiredToken": ErrorKind.PERMISSION_DENIED,
    "TokenRefreshRequired": ErrorKind.PERMISSION_DENIED,
    "InvalidAccessKeyId": ErrorKind.PERMISSION_DENIED,
    "SignatureDoesNotMatch": ErrorKind.PERMISSION_DENIED,
    "NoSuchBucket": ErrorKind.NOT_FOUND,
    "NoSuchKey": ErrorKind.NOT_FOUND,
    "PreconditionFailed": ErrorKind.PRECONDITION_FAILED,
}


def kind_for_status(status_code: int, code: str | None = None) -> ErrorKind:
    """Map an HTTP status (and optional S3 error code) to an ErrorKind."""
    if code is not None and code in _CODE_KINDS:
        return _CODE_KINDS[code]
    if status_code in (429, 503):
        return ErrorKind.THROTTLED
    if status_code >= 500:
        return ErrorKind.UNAVAILABLE
    if status_code in (401, 403):
        return ErrorKind.PERMISSION_DENIED
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 412:
        return ErrorKind.PRECONDITION_FAILED
    if status_code in (400, 411, 413, 416):
        return ErrorKind.INVALID_ARGUMENT
    return ErrorKind.UNKNOWN
