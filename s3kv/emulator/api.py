import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Annotated
from urllib.parse import parse_qsl, quote

from fastapi import APIRouter, Depends, FastAPI, Header, Path, Request, Response

from s3kv.emulator.depends import Injected, bind
from s3kv.emulator.storage import PartialData, Range, StorageBackend, StorageError
from s3kv.errors import KvStoreError
from s3kv.s3xml import error_body, list_objects_body, parse_location_constraint
from s3kv.signing import UNSIGNED_PAYLOAD, parse_authorization, payload_sha256, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class Config:
    host: str
    # requests to <bucket>.<virtual_host_domain> are virtual-hosted style
    virtual_host_domain: str = "s3.amazonaws.com"
    # access key -> secret key; None disables signature checks
    credentials: dict[str, str] | None = None
    max_clock_skew: float = 15 * 60


@dataclass
class Faults:
    """Statuses to answer the next requests with, consumed in order."""

    statuses: list[int] = field(default_factory=list)
    served: int = 0


class S3Error(Exception):
    def __init__(self, status_code: int, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.status_code = status_code
        self.code = code
        self.message = message or code


def _error_response(status_code: int, code: str, message: str, resource: str = "") -> Response:
    return Response(
        status_code=status_code,
        content=error_body(code, message, resource),
        media_type="application/xml",
    )


_FAULT_CODES = {429: "SlowDown", 500: "InternalError", 503: "SlowDown", 504: "GatewayTimeout"}


def make_app(
    storage: StorageBackend,
    config: Config,
    faults: Faults | None = None,
) -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    bind(app, StorageBackend, storage)
    bind(app, Config, config)
    bind(app, Faults, faults or Faults())

    @app.exception_handler(S3Error)
    async def s3_error(request: Request, exc: S3Error) -> Response:
        return _error_response(exc.status_code, exc.code, exc.message, request.url.path)

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError) -> Response:
        return _error_response(exc.status_code, exc.code, str(exc), request.url.path)

    return app


@router.get("/health")
async def health() -> Response:
    return Response(status_code=200)


def _raw_path(request: Request) -> str:
    raw = request.scope.get("raw_path")
    if not raw:
        return quote(request.url.path, safe="/")
    return raw.split(b"?", 1)[0].decode("latin-1")


async def authenticate(request: Request, config: Injected[Config], faults: Injected[Faults]) -> None:
    if faults.statuses:
        status = faults.statuses.pop(0)
        faults.served += 1
        raise S3Error(status, _FAULT_CODES.get(status, "InternalError"), "injected fault")
    if config.credentials is None:
        return
    header = request.headers.get("authorization")
    if not header:
        raise S3Error(403, "AccessDenied", "anonymous access is not allowed")
    try:
        auth = parse_authorization(header)
    except KvStoreError as e:
        raise S3Error(400, "AuthorizationHeaderMalformed", e.message) from e
    secret = config.credentials.get(auth.access_key)
    if secret is None:
        raise S3Error(403, "InvalidAccessKeyId", f"unknown access key {auth.access_key}")
    amz_date = request.headers.get("x-amz-date", "")
    try:
        signed_at = datetime.strptime(amz_date, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        raise S3Error(403, "AccessDenied", "missing or malformed x-amz-date") from None
    skew = abs((datetime.now(timezone.utc) - signed_at).total_seconds())
    if skew > config.max_clock_skew:
        raise S3Error(403, "RequestTimeTooSkewed", f"request time is {skew:.0f}s off")
    query = parse_qsl(request.scope.get("query_string", b"").decode(), keep_blank_values=True)
    if not verify_signature(request.method, _raw_path(request), query, dict(request.headers), secret):
        logger.info("signature mismatch for %s %s", request.method, request.url.path)
        raise S3Error(403, "SignatureDoesNotMatch", "the request signature does not match")


Authenticated = Annotated[None, Depends(authenticate)]


@dataclass
class ObjectPath:
    bucket: str
    key: str


def get_bucket(
    host: Annotated[str, Header()],
    key: Annotated[str, Path()],
    config: Injected[Config],
) -> ObjectPath:
    # remove the port
    host = host.split(":")[0]
    suffix = "." + config.virtual_host_domain
    if host != config.host and host.endswith(suffix):
        return ObjectPath(bucket=host[: -len(suffix)], key=key)
    bucket = key.split("/")[0]
    key = key[len(bucket) + 1 :]
    return ObjectPath(bucket=bucket, key=key)


def range_from_header(range: Annotated[str | None, Header()] = None) -> Range:
    if range is None:
        return Range(start=0, end=None)
    if not range.startswith("bytes="):
        raise S3Error(400, "InvalidArgument", "Invalid range header")
    range = range[6:]
    start, _, end = range.partition("-")
    start = start or "0"
    try:
        return Range(start=int(start), end=int(end) if end else None)
    except ValueError:
        raise S3Error(400, "InvalidArgument", "Invalid range header") from None


def _etags(header: str) -> list[str]:
    tags = []
    for tag in header.split(","):
        tag = tag.strip()
        if tag.startswith("W/"):
            tag = tag[2:]
        tags.append(tag.strip('"'))
    return tags


def _single_etag(header: str | None) -> str | None:
    if header is None:
        return None
    tags = _etags(header)
    if len(tags) != 1:
        raise S3Error(501, "NotImplemented", "multiple entity tags are not supported")
    return tags[0]


def check_read_preconditions(etag: str, if_match: str | None, if_none_match: str | None) -> Response | None:
    if if_match is not None and "*" not in _etags(if_match) and etag not in _etags(if_match):
        return _error_response(412, "PreconditionFailed", "At least one of the pre-conditions you specified did not hold")
    if if_none_match is not None and ("*" in _etags(if_none_match) or etag in _etags(if_none_match)):
        return Response(status_code=304, headers={"ETag": f'"{etag}"'})
    return None


def _object_headers(body: PartialData) -> dict[str, str]:
    return {
        "ETag": f'"{body.etag}"',
        "Last-Modified": format_datetime(body.last_modified, usegmt=True),
        "Accept-Ranges": "bytes",
    }


@router.put("/api/s3/{key:path}")
async def upload_object(
    request: Request,
    _: Authenticated,
    object: Annotated[ObjectPath, Depends(get_bucket)],
    fs: Injected[StorageBackend],
) -> Response:
    body = await request.body()
    content_sha256 = request.headers.get("x-amz-content-sha256")
    if content_sha256 and content_sha256 != UNSIGNED_PAYLOAD and content_sha256 != payload_sha256(body):
        raise S3Error(400, "XAmzContentSHA256Mismatch", "payload hash does not match")
    if not object.key:
        region = parse_location_constraint(body) or "us-east-1"
        if not await fs.create_bucket(object.bucket, region):
            raise S3Error(409, "BucketAlreadyOwnedByYou", f"bucket {object.bucket} already exists")
        return Response(status_code=200, headers={"Location": f"/{object.bucket}"})

    meta = await fs.put(
        object.bucket,
        object.key,
        body,
        if_match=_single_etag(request.headers.get("If-Match")),
        if_none_match=_single_etag(request.headers.get("If-None-Match")),
        content_md5=request.headers.get("Content-MD5"),
    )
    return Response(status_code=200, headers={"ETag": f'"{meta.etag}"'})


async def _list_objects(request: Request, bucket: str, fs: StorageBackend) -> Response:
    params = request.query_params
    if params.get("list-type") != "2":
        raise S3Error(400, "InvalidArgument", "only ListObjectsV2 is supported")
    prefix = params.get("prefix", "")
    max_keys = int(params.get("max-keys", "1000"))
    token = params.get("continuation-token")
    start_after = params.get("start-after")
    if token:
        start_after = base64.urlsafe_b64decode(token.encode()).decode()
    objects, truncated = await fs.list_objects(bucket, prefix, start_after, max_keys)
    next_token = None
    if truncated and objects:
        next_token = base64.urlsafe_b64encode(objects[-1].key.encode()).decode()
    content = list_objects_body(
        bucket,
        prefix,
        [(o.key, o.etag, o.size) for o in objects],
        max_keys,
        next_token,
        token,
    )
    return Response(content=content, media_type="application/xml")


@router.get("/api/s3/{key:path}")
async def download_object(
    request: Request,
    _: Authenticated,
    object: Annotated[ObjectPath, Depends(get_bucket)],
    fs: Injected[StorageBackend],
    range: Annotated[Range, Depends(range_from_header)],
) -> Response:
    if not object.key:
        return await _list_objects(request, object.bucket, fs)
    meta = await fs.head(object.bucket, object.key)
    not_modified = check_read_preconditions(
        meta.etag, request.headers.get("If-Match"), request.headers.get("If-None-Match")
    )
    if not_modified is not None:
        return not_modified
    body = await fs.get(object.bucket, object.key, range=range)
    headers = _object_headers(body)
    headers["Content-Length"] = str(len(body.data))
    if range:
        end = range.start + len(body.data) - 1
        headers["Content-Range"] = f"bytes {range.start}-{end}/{body.total}"
        return Response(status_code=206, content=body.data, headers=headers)
    return Response(content=body.data, headers=headers)


@router.head("/api/s3/{key:path}")
async def head_object(
    request: Request,
    _: Authenticated,
    object: Annotated[ObjectPath, Depends(get_bucket)],
    fs: Injected[StorageBackend],
) -> Response:
    meta = await fs.head(object.bucket, object.key)
    not_modified = check_read_preconditions(
        meta.etag, request.headers.get("If-Match"), request.headers.get("If-None-Match")
    )
    if not_modified is not None:
        # HEAD responses carry no body
        return Response(status_code=not_modified.status_code, headers={"ETag": f'"{meta.etag}"'})
    return Response(
        headers={
            "ETag": f'"{meta.etag}"',
            "Content-Length": str(meta.total),
            "Last-Modified": format_datetime(meta.last_modified, usegmt=True),
            "Accept-Ranges": "bytes",
        }
    )


@router.delete("/api/s3/{key:path}")
async def delete_object(
    request: Request,
    _: Authenticated,
    object: Annotated[ObjectPath, Depends(get_bucket)],
    fs: Injected[StorageBackend],
) -> Response:
    await fs.delete(
        object.bucket,
        object.key,
        if_match=_single_etag(request.headers.get("If-Match")),
    )
    return Response(status_code=204)
