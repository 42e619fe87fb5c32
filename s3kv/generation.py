from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from s3kv.errors import KvStoreError

_NO_VALUE = "\x00no-value"
_UNKNOWN = ""


@dataclass(frozen=True)
class StorageGeneration:
    """Opaque version of a key's value, compared only for equality.

    Two special values exist: ``no_value()`` for a key that does not exist
    and ``unknown()`` for "no constraint". Any other generation wraps the
    object's ETag.
    """

    value: str

    @classmethod
    def no_value(cls) -> StorageGeneration:
        return cls(_NO_VALUE)

    @classmethod
    def unknown(cls) -> StorageGeneration:
        return cls(_UNKNOWN)

    @classmethod
    def from_etag(cls, etag: str) -> StorageGeneration:
        etag = etag.strip()
        if etag.startswith("W/"):
            etag = etag[2:]
        etag = etag.strip('"')
        if not etag:
            raise KvStoreError.internal("backend returned an empty ETag")
        return cls(etag)

    @property
    def is_no_value(self) -> bool:
        return self.value == _NO_VALUE

    @property
    def is_unknown(self) -> bool:
        return self.value == _UNKNOWN

    @property
    def etag(self) -> str:
        """Quoted entity tag suitable for If-Match / If-None-Match."""
        if self.is_no_value or self.is_unknown:
            raise ValueError(f"{self!r} has no ETag")
        return f'"{self.value}"'

    def __repr__(self) -> str:
        if self.is_no_value:
            return "StorageGeneration.no_value()"
        if self.is_unknown:
            return "StorageGeneration.unknown()"
        return f"StorageGeneration({self.value!r})"


@dataclass(frozen=True)
class ByteRange:
    inclusive_min: int = 0
    exclusive_max: int | None = None

    def __post_init__(self) -> None:
        if self.inclusive_min < 0:
            raise KvStoreError.invalid_argument(f"invalid byte range start: {self.inclusive_min}")
        if self.exclusive_max is not None and self.exclusive_max < self.inclusive_min:
            raise KvStoreError.invalid_argument(
                f"invalid byte range [{self.inclusive_min}, {self.exclusive_max})"
            )

    def __bool__(self) -> bool:
        return self.inclusive_min > 0 or self.exclusive_max is not None

    @property
    def size(self) -> int | None:
        if self.exclusive_max is None:
            return None
        return self.exclusive_max - self.inclusive_min

    def header(self) -> str:
        # the HTTP range end is inclusive
        end = "" if self.exclusive_max is None else str(self.exclusive_max - 1)
        return f"bytes={self.inclusive_min}-{end}"


@dataclass(frozen=True)
class ReadOptions:
    if_equal: StorageGeneration = field(default_factory=StorageGeneration.unknown)
    if_not_equal: StorageGeneration = field(default_factory=StorageGeneration.unknown)
    byte_range: ByteRange = field(default_factory=ByteRange)
    timeout: float | None = None


@dataclass(frozen=True)
class WriteOptions:
    if_equal: StorageGeneration = field(default_factory=StorageGeneration.unknown)
    if_not_equal: StorageGeneration = field(default_factory=StorageGeneration.unknown)
    timeout: float | None = None


def condition_met(
    generation: StorageGeneration,
    if_equal: StorageGeneration,
    if_not_equal: StorageGeneration,
) -> bool:
    if not if_equal.is_unknown and generation != if_equal:
        return False
    if not if_not_equal.is_unknown and generation == if_not_equal:
        return False
    return True


class ReadState(Enum):
    VALUE = "value"
    MISSING = "missing"
    # the read's precondition was not met
    UNSPECIFIED = "unspecified"


@dataclass(frozen=True)
class ReadResult:
    state: ReadState
    generation: StorageGeneration
    timestamp: datetime
    value: bytes = b""

    @classmethod
    def of_value(cls, value: bytes, generation: StorageGeneration, timestamp: datetime) -> ReadResult:
        return cls(ReadState.VALUE, generation, timestamp, value)

    @classmethod
    def missing(cls, timestamp: datetime) -> ReadResult:
        return cls(ReadState.MISSING, StorageGeneration.no_value(), timestamp)

    @classmethod
    def unspecified(cls, generation: StorageGeneration, timestamp: datetime) -> ReadResult:
        return cls(ReadState.UNSPECIFIED, generation, timestamp)

    @property
    def has_value(self) -> bool:
        return self.state is ReadState.VALUE


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a conditional write or delete.

    ``generation`` is None when the precondition did not hold; callers
    re-read and retry at a higher layer.
    """

    generation: StorageGeneration | None
    timestamp: datetime

    @property
    def success(self) -> bool:
        return self.generation is not None

    @property
    def precondition_failed(self) -> bool:
        return self.generation is None


@dataclass(frozen=True)
class ListPage:
    keys: list[str]
    next_continuation_token: str | None

    @property
    def truncated(self) -> bool:
        return self.next_continuation_token is not None
