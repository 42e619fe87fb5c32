from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass
class Range:
    start: int
    # inclusive, as in the HTTP Range header
    end: int | None

    def __bool__(self) -> bool:
        return self.start > 0 or self.end is not None


@dataclass
class ObjectMetadata:
    etag: str
    total: int
    last_modified: datetime


@dataclass
class PartialData:
    data: bytes
    total: int
    etag: str
    last_modified: datetime


@dataclass
class ListedObject:
    key: str
    etag: str
    size: int


class StorageError(Exception):
    status_code = 500
    code = "InternalError"


class NoSuchBucket(StorageError):
    status_code = 404
    code = "NoSuchBucket"


class NoSuchKey(StorageError):
    status_code = 404
    code = "NoSuchKey"


class PreconditionFailed(StorageError):
    status_code = 412
    code = "PreconditionFailed"


class BadDigest(StorageError):
    status_code = 400
    code = "BadDigest"


class InvalidRange(StorageError):
    status_code = 416
    code = "InvalidRange"


class StorageBackend(Protocol):
    async def create_bucket(self, namespace: str, region: str) -> bool: ...

    async def put(
        self,
        namespace: str,
        key: str,
        body: bytes,
        if_match: str | None = None,
        if_none_match: str | None = None,
        # base64 MD5 of ``body``, as sent in Content-MD5
        content_md5: str | None = None,
    ) -> ObjectMetadata: ...

    async def get(self, namespace: str, key: str, range: Range | None = None) -> PartialData: ...

    async def head(self, namespace: str, key: str) -> ObjectMetadata: ...

    async def delete(self, namespace: str, key: str, if_match: str | None = None) -> None: ...

    async def list_objects(
        self, namespace: str, prefix: str, start_after: str | None, max_keys: int
    ) -> tuple[list[ListedObject], bool]: ...
