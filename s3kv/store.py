from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable, Collection
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from s3kv.config import S3StoreConfig
from s3kv.credentials import CredentialCache, CredentialSource, default_credential_source, utcnow
from s3kv.errors import ErrorKind, KvStoreError
from s3kv.generation import (
    ListPage,
    ReadOptions,
    ReadResult,
    StorageGeneration,
    WriteOptions,
    WriteResult,
    condition_met,
)
from s3kv.retry import RetryState, run_with_retry
from s3kv.s3xml import create_bucket_body, error_from_response, parse_list_objects
from s3kv.signing import EMPTY_SHA256, S3RequestBuilder, payload_sha256, uri_encode
from s3kv.transport import HttpResponse, HttpxTransport, Transport

logger = logging.getLogger(__name__)

MAX_KEY_BYTES = 1024
DEFAULT_LIST_PAGE_SIZE = 1000


def validate_key(key: str | bytes) -> str:
    """Check a key before it is sent anywhere; returns it as ``str``."""
    if isinstance(key, bytes):
        try:
            key = key.decode("utf-8")
        except UnicodeDecodeError as e:
            raise KvStoreError.invalid_argument("key is not valid UTF-8", key=repr(key)) from e
    if not key:
        raise KvStoreError.invalid_argument("key must not be empty")
    if len(key.encode("utf-8")) > MAX_KEY_BYTES:
        raise KvStoreError.invalid_argument(f"key exceeds {MAX_KEY_BYTES} bytes", key=key[:64])
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in key):
        raise KvStoreError.invalid_argument("key contains control characters", key=repr(key))
    if any(segment in (".", "..") for segment in key.split("/")):
        raise KvStoreError.invalid_argument("key contains '.' or '..' segments", key=key)
    return key


class _Deadline:
    def __init__(self, timeout: float | None) -> None:
        self._at = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> float | None:
        if self._at is None:
            return None
        return max(self._at - time.monotonic(), 0.0)


class S3KeyValueStore:
    """Generation-conditioned key-value operations on one bucket and prefix.

    Every request is signed with credentials from a CredentialCache and
    issued through the configured RetryPolicy. Transient failures are retried
    with a freshly signed request; generation mismatches are returned to the
    caller as results, never retried.
    """

    def __init__(
        self,
        config: S3StoreConfig,
        transport: Transport,
        credentials: CredentialCache,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._transport = transport
        self._credentials = credentials
        self._clock = clock

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        config: S3StoreConfig,
        *,
        credentials: CredentialSource | None = None,
        **client_kwargs: Any,
    ) -> AsyncIterator[S3KeyValueStore]:
        async with HttpxTransport.connect(**client_kwargs) as transport:
            source = credentials or default_credential_source(config, transport)
            yield cls(config, transport, CredentialCache(source))

    @property
    def config(self) -> S3StoreConfig:
        return self._config

    @property
    def credentials(self) -> CredentialCache:
        return self._credentials

    # -- requests -----------------------------------------------------------

    def _object_url(self, full_key: str) -> str:
        return f"{self._config.base_url}/{uri_encode(full_key, encode_slash=False)}"

    def _bucket_url(self) -> str:
        if self._config.uses_path_style:
            return self._config.base_url
        return self._config.base_url + "/"

    def _full_key(self, key: str | bytes) -> str:
        full = self._config.path + validate_key(key)
        if len(full.encode("utf-8")) > MAX_KEY_BYTES:
            raise KvStoreError.invalid_argument(f"key with prefix exceeds {MAX_KEY_BYTES} bytes")
        return full

    async def _issue(
        self,
        builder: S3RequestBuilder,
        description: str,
        *,
        body: bytes = b"",
        accept: Collection[int] = (),
        timeout: float | None = None,
    ) -> tuple[HttpResponse, datetime]:
        """Sign and send ``builder``'s request, retrying transient failures.

        Returns the response and the time the successful attempt started.
        2xx statuses and those in ``accept`` are returned; anything else is
        raised as a KvStoreError.
        """
        payload_hash = payload_sha256(body) if body else EMPTY_SHA256

        async def attempt(state: RetryState) -> tuple[HttpResponse, datetime]:
            try:
                credentials = await self._credentials.get()
            except KvStoreError as e:
                # credential sources retry internally
                raise KvStoreError(
                    ErrorKind.PERMISSION_DENIED,
                    f"cannot obtain credentials for {description}: {e.message}",
                    code=e.code,
                    context={"credential_error": e.kind.value},
                    cause=e,
                ) from e
            started = self._clock()
            request = builder.build(
                credentials,
                self._config.aws_region,
                payload_hash,
                started,
                host_header=self._config.host_header,
                body=body,
            )
            remaining = state.remaining()
            connect_timeout = self._config.connect_timeout
            read_timeout = self._config.read_timeout
            if remaining is not None:
                connect_timeout = min(connect_timeout, remaining)
                read_timeout = min(read_timeout, remaining)
            logger.debug("%s: %s %s (attempt %d)", description, request.method, request.url, state.attempt)
            response = await self._transport.issue_request(
                request, connect_timeout=connect_timeout, read_timeout=read_timeout
            )
            if 200 <= response.status_code < 300 or response.status_code in accept:
                return response, started
            error = error_from_response(response, operation=description, url=request.url)
            if error.kind is ErrorKind.PERMISSION_DENIED:
                self._credentials.invalidate()
            raise error

        try:
            return await run_with_retry(
                attempt, self._config.retries, timeout=timeout, description=description
            )
        except KvStoreError as e:
            if e.kind in (ErrorKind.INTERNAL, ErrorKind.UNKNOWN):
                logger.error("%s failed: %s", description, e, extra={"error": e.to_dict()})
            raise

    async def _head_generation(
        self, full_key: str, deadline: _Deadline
    ) -> tuple[StorageGeneration, datetime]:
        response, started = await self._issue(
            S3RequestBuilder("HEAD", self._object_url(full_key)),
            f"head {full_key}",
            accept=(404,),
            timeout=deadline.remaining(),
        )
        if response.status_code == 404:
            return StorageGeneration.no_value(), started
        return self._generation_of(response, full_key), started

    def _check_bucket(self, response: HttpResponse, full_key: str) -> None:
        """Raise for a 404 that is about the bucket rather than the key."""
        if response.status_code != 404:
            return
        error = error_from_response(response, key=full_key, bucket=self._config.bucket)
        if error.code == "NoSuchBucket":
            raise error

    @staticmethod
    def _generation_of(response: HttpResponse, full_key: str) -> StorageGeneration:
        etag = response.header("etag")
        if not etag:
            raise KvStoreError.internal(f"response for {full_key} has no ETag")
        return StorageGeneration.from_etag(etag)

    # -- operations ---------------------------------------------------------

    async def read(self, key: str | bytes, options: ReadOptions | None = None) -> ReadResult:
        options = options or ReadOptions()
        full_key = self._full_key(key)
        stat_only = options.byte_range.size == 0
        builder = S3RequestBuilder("HEAD" if stat_only else "GET", self._object_url(full_key))
        if_equal, if_not_equal = options.if_equal, options.if_not_equal
        # no_value() conditions have no header form and are checked below
        if not (if_equal.is_unknown or if_equal.is_no_value):
            builder = builder.with_header("if-match", if_equal.etag)
        if not (if_not_equal.is_unknown or if_not_equal.is_no_value):
            builder = builder.with_header("if-none-match", if_not_equal.etag)
        if options.byte_range and not stat_only:
            builder = builder.with_header("range", options.byte_range.header())

        response, started = await self._issue(
            builder, f"read {full_key}", accept=(304, 404, 412), timeout=options.timeout
        )
        status = response.status_code
        if status == 404:
            generation = StorageGeneration.no_value()
            if condition_met(generation, if_equal, if_not_equal):
                return ReadResult.missing(started)
            return ReadResult.unspecified(generation, started)
        if status == 304:
            return ReadResult.unspecified(if_not_equal, started)
        if status == 412:
            return ReadResult.unspecified(StorageGeneration.unknown(), started)

        generation = self._generation_of(response, full_key)
        if not condition_met(generation, if_equal, if_not_equal):
            return ReadResult.unspecified(generation, started)
        value = response.body
        if status == 200 and options.byte_range and not stat_only:
            # the backend ignored the Range header
            byte_range = options.byte_range
            value = value[byte_range.inclusive_min : byte_range.exclusive_max]
        return ReadResult.of_value(value, generation, started)

    async def write(
        self, key: str | bytes, value: bytes, options: WriteOptions | None = None
    ) -> WriteResult:
        options = options or WriteOptions()
        full_key = self._full_key(key)
        deadline = _Deadline(options.timeout)
        if not options.if_not_equal.is_unknown:
            # S3 has no atomic form of this condition
            current, started = await self._head_generation(full_key, deadline)
            if current == options.if_not_equal:
                return WriteResult(None, started)

        builder = S3RequestBuilder("PUT", self._object_url(full_key)).with_header(
            "content-type", "application/octet-stream"
        )
        if options.if_equal.is_no_value:
            builder = builder.with_header("if-none-match", "*")
        conditional = not (options.if_equal.is_unknown or options.if_equal.is_no_value)
        if conditional:
            builder = builder.with_header("if-match", options.if_equal.etag)

        response, started = await self._issue(
            builder,
            f"write {full_key}",
            body=value,
            # If-Match on a missing object is answered with 404
            accept=(404, 412) if conditional else (412,),
            timeout=deadline.remaining(),
        )
        self._check_bucket(response, full_key)
        if response.status_code in (404, 412):
            logger.debug("write %s: precondition %r not met", full_key, options.if_equal)
            return WriteResult(None, started)
        if response.header("etag"):
            return WriteResult(self._generation_of(response, full_key), started)
        generation, _ = await self._head_generation(full_key, deadline)
        return WriteResult(generation, started)

    async def delete(self, key: str | bytes, options: WriteOptions | None = None) -> WriteResult:
        options = options or WriteOptions()
        full_key = self._full_key(key)
        deadline = _Deadline(options.timeout)
        if_equal = options.if_equal
        if if_equal.is_no_value or not options.if_not_equal.is_unknown:
            current, started = await self._head_generation(full_key, deadline)
            if not condition_met(current, if_equal, options.if_not_equal):
                return WriteResult(None, started)
            if current.is_no_value:
                return WriteResult(StorageGeneration.no_value(), started)

        builder = S3RequestBuilder("DELETE", self._object_url(full_key))
        conditional = not (if_equal.is_unknown or if_equal.is_no_value)
        if conditional:
            builder = builder.with_header("if-match", if_equal.etag)
        response, started = await self._issue(
            builder, f"delete {full_key}", accept=(404, 412), timeout=deadline.remaining()
        )
        self._check_bucket(response, full_key)
        if response.status_code == 412 or (response.status_code == 404 and conditional):
            logger.debug("delete %s: precondition %r not met", full_key, if_equal)
            return WriteResult(None, started)
        return WriteResult(StorageGeneration.no_value(), started)

    async def list_page(
        self,
        prefix: str = "",
        continuation_token: str | None = None,
        *,
        max_keys: int = DEFAULT_LIST_PAGE_SIZE,
        timeout: float | None = None,
    ) -> ListPage:
        """Fetch one page of keys under ``prefix``, in backend order."""
        if max_keys <= 0:
            raise KvStoreError.invalid_argument(f"max_keys must be > 0, got {max_keys}")
        full_prefix = self._config.path + prefix
        builder = (
            S3RequestBuilder("GET", self._bucket_url())
            .with_query_parameter("list-type", "2")
            .with_query_parameter("max-keys", str(max_keys))
        )
        if full_prefix:
            builder = builder.with_query_parameter("prefix", full_prefix)
        if continuation_token:
            builder = builder.with_query_parameter("continuation-token", continuation_token)
        response, _ = await self._issue(builder, f"list {full_prefix!r}", timeout=timeout)
        keys, next_token = parse_list_objects(response.body)
        strip = len(self._config.path)
        return ListPage([k[strip:] for k in keys if k.startswith(self._config.path)], next_token)

    async def list(self, prefix: str = "", *, timeout: float | None = None) -> AsyncIterator[str]:
        token: str | None = None
        while True:
            page = await self.list_page(prefix, token, timeout=timeout)
            for key in page.keys:
                yield key
            if not page.truncated:
                return
            token = page.next_continuation_token

    async def delete_prefix(self, prefix: str = "", *, timeout: float | None = None) -> int:
        """Unconditionally delete every key under ``prefix``; returns the count."""
        keys = [key async for key in self.list(prefix, timeout=timeout)]
        for key in keys:
            await self.delete(key, WriteOptions(timeout=timeout))
        return len(keys)

    async def create_bucket(self, *, timeout: float | None = None) -> bool:
        """Create the bucket; False if this account already owns it."""
        region = self._config.aws_region
        body = b"" if region == "us-east-1" else create_bucket_body(region)
        builder = S3RequestBuilder("PUT", self._bucket_url())
        if body:
            builder = builder.with_header("content-type", "application/xml")
        response, _ = await self._issue(
            builder, f"create bucket {self._config.bucket}", body=body, accept=(409,), timeout=timeout
        )
        if response.status_code != 409:
            logger.info("created bucket %s in %s", self._config.bucket, region)
            return True
        error = error_from_response(response, bucket=self._config.bucket)
        if error.code == "BucketAlreadyOwnedByYou":
            return False
        raise KvStoreError(
            ErrorKind.PERMISSION_DENIED,
            f"bucket {self._config.bucket} is owned by another account: {error.message}",
            status_code=409,
            code=error.code,
        )
