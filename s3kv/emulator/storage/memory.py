import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from hashlib import md5

from s3kv.emulator.storage import (
    BadDigest,
    ListedObject,
    NoSuchBucket,
    NoSuchKey,
    ObjectMetadata,
    PartialData,
    InvalidRange,
    PreconditionFailed,
    Range,
    StorageBackend,
)


@dataclass
class Object:
    body: bytes
    etag: str
    last_modified: datetime

    @property
    def metadata(self) -> ObjectMetadata:
        return ObjectMetadata(etag=self.etag, total=len(self.body), last_modified=self.last_modified)


@dataclass
class Bucket:
    region: str
    objects: dict[str, Object] = field(default_factory=dict)


# Each method checks its preconditions and mutates without awaiting in
# between, so conditional writes are atomic on a single event loop.
@dataclass
class InMemoryBackend(StorageBackend):
    buckets: dict[str, Bucket] = field(default_factory=dict)
    # create buckets on first write, as some S3-compatible servers do
    auto_create: bool = False

    def _bucket(self, namespace: str, create: bool = False) -> Bucket:
        if namespace not in self.buckets:
            if not (create and self.auto_create):
                raise NoSuchBucket(namespace)
            self.buckets[namespace] = Bucket(region="us-east-1")
        return self.buckets[namespace]

    def _object(self, namespace: str, key: str) -> Object:
        try:
            return self._bucket(namespace).objects[key]
        except KeyError:
            raise NoSuchKey(key) from None

    async def create_bucket(self, namespace: str, region: str) -> bool:
        if namespace in self.buckets:
            return False
        self.buckets[namespace] = Bucket(region=region)
        return True

    async def put(
        self,
        namespace: str,
        key: str,
        body: bytes,
        if_match: str | None = None,
        if_none_match: str | None = None,
        content_md5: str | None = None,
    ) -> ObjectMetadata:
        digest = md5(body)
        if content_md5 and base64.b64encode(digest.digest()).decode() != content_md5:
            raise BadDigest(key)
        objects = self._bucket(namespace, create=True).objects
        current = objects.get(key)
        if if_none_match == "*" and current is not None:
            raise PreconditionFailed(key)
        if if_match is not None:
            if current is None:
                raise NoSuchKey(key)
            if if_match not in ("*", current.etag):
                raise PreconditionFailed(key)
        obj = Object(body=body, etag=digest.hexdigest(), last_modified=datetime.now(timezone.utc))
        objects[key] = obj
        return obj.metadata

    async def get(self, namespace: str, key: str, range: Range | None = None) -> PartialData:
        obj = self._object(namespace, key)
        data = obj.body
        total = len(data)
        if range:
            if range.start >= total and total > 0:
                raise InvalidRange(key)
            data = data[range.start : range.end + 1 if range.end is not None else total]
        return PartialData(data=data, total=total, etag=obj.etag, last_modified=obj.last_modified)

    async def head(self, namespace: str, key: str) -> ObjectMetadata:
        return self._object(namespace, key).metadata

    async def delete(self, namespace: str, key: str, if_match: str | None = None) -> None:
        objects = self._bucket(namespace).objects
        if if_match is not None:
            current = objects.get(key)
            if current is None:
                raise NoSuchKey(key)
            if if_match not in ("*", current.etag):
                raise PreconditionFailed(key)
        objects.pop(key, None)

    async def list_objects(
        self, namespace: str, prefix: str, start_after: str | None, max_keys: int
    ) -> tuple[list[ListedObject], bool]:
        objects = self._bucket(namespace).objects
        keys = sorted(
            key
            for key in objects
            if key.startswith(prefix) and (start_after is None or key > start_after)
        )
        page = [
            ListedObject(key=key, etag=objects[key].etag, size=len(objects[key].body))
            for key in keys[:max_keys]
        ]
        return page, len(keys) > max_keys
