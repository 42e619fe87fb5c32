"""AWS Signature Version 4 for S3-style requests.

The canonical request follows the S3 variant of SigV4: the URI path is used
exactly as sent (already percent-encoded, not normalized or double-encoded).
"""
from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from urllib.parse import parse_qsl, quote, urlsplit

from s3kv.credentials.base import Credentials
from s3kv.errors import KvStoreError
from s3kv.transport import HttpRequest

ALGORITHM = "AWS4-HMAC-SHA256"
# sha256 of an empty payload
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"

_AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"
_UNSIGNED_HEADERS = frozenset({"authorization", "expect", "user-agent", "x-amzn-trace-id"})


def payload_sha256(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def uri_encode(value: str, *, encode_slash: bool = True) -> str:
    # quote() leaves the RFC 3986 unreserved set (A-Z a-z 0-9 - _ . ~) alone
    return quote(value, safe="" if encode_slash else "/")


def _utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def amz_date(timestamp: datetime) -> str:
    return _utc(timestamp).strftime(_AMZ_DATE_FORMAT)


def canonical_query_string(params: Iterable[tuple[str, str]]) -> str:
    encoded = sorted((uri_encode(k), uri_encode(v)) for k, v in params)
    return "&".join(f"{k}={v}" for k, v in encoded)


def canonical_headers(headers: Mapping[str, str]) -> tuple[str, str]:
    """Return the canonical header block and the signed-header list."""
    values: dict[str, list[str]] = {}
    for name, value in headers.items():
        values.setdefault(name.strip().lower(), []).append(" ".join(value.split()))
    names = sorted(values)
    block = "".join(f"{name}:{','.join(values[name])}\n" for name in names)
    return block, ";".join(names)


def canonical_request(
    method: str,
    path: str,
    query: Iterable[tuple[str, str]],
    headers: Mapping[str, str],
    payload_hash: str,
) -> str:
    block, signed = canonical_headers(headers)
    return "\n".join(
        [
            method.upper(),
            path or "/",
            canonical_query_string(query),
            block,
            signed,
            payload_hash,
        ]
    )


def credential_scope(timestamp: datetime, region: str, service: str) -> str:
    return f"{_utc(timestamp):%Y%m%d}/{region}/{service}/aws4_request"


def string_to_sign(timestamp: datetime, scope: str, canonical: str) -> str:
    return "\n".join(
        [
            ALGORITHM,
            amz_date(timestamp),
            scope,
            hashlib.sha256(canonical.encode()).hexdigest(),
        ]
    )


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode(), hashlib.sha256).digest()


def signing_key(secret_key: str, timestamp: datetime, region: str, service: str) -> bytes:
    k_date = _hmac(f"AWS4{secret_key}".encode(), f"{_utc(timestamp):%Y%m%d}")
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def compute_signature(
    secret_key: str,
    timestamp: datetime,
    region: str,
    service: str,
    canonical: str,
) -> str:
    scope = credential_scope(timestamp, region, service)
    key = signing_key(secret_key, timestamp, region, service)
    return hmac.new(key, string_to_sign(timestamp, scope, canonical).encode(), hashlib.sha256).hexdigest()


def _has_header(headers: Mapping[str, str], name: str) -> bool:
    return any(k.lower() == name for k in headers)


@dataclass(frozen=True)
class RequestSigner:
    region: str
    service: str = "s3"

    def sign(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        payload_hash: str,
        timestamp: datetime,
        credentials: Credentials,
    ) -> dict[str, str]:
        """Return ``headers`` plus the SigV4 headers for this request.

        Pure: the same inputs always produce the same output.
        """
        parts = urlsplit(url)
        signed = dict(headers)
        if not _has_header(signed, "host"):
            signed["host"] = parts.netloc
        signed["x-amz-date"] = amz_date(timestamp)
        signed["x-amz-content-sha256"] = payload_hash
        if credentials.anonymous:
            return signed
        if credentials.session_token:
            signed["x-amz-security-token"] = credentials.session_token
        to_sign = {k: v for k, v in signed.items() if k.lower() not in _UNSIGNED_HEADERS}
        canonical = canonical_request(
            method,
            parts.path,
            parse_qsl(parts.query, keep_blank_values=True),
            to_sign,
            payload_hash,
        )
        signature = compute_signature(
            credentials.secret_key, timestamp, self.region, self.service, canonical
        )
        _, signed_names = canonical_headers(to_sign)
        scope = credential_scope(timestamp, self.region, self.service)
        signed["Authorization"] = (
            f"{ALGORITHM} Credential={credentials.access_key}/{scope}, "
            f"SignedHeaders={signed_names}, Signature={signature}"
        )
        return signed


@dataclass(frozen=True)
class Authorization:
    access_key: str
    date: str
    region: str
    service: str
    signed_headers: tuple[str, ...]
    signature: str


def parse_authorization(header: str) -> Authorization:
    algorithm, _, rest = header.strip().partition(" ")
    if algorithm != ALGORITHM:
        raise KvStoreError.invalid_argument(f"unsupported signing algorithm: {algorithm!r}")
    fields: dict[str, str] = {}
    for item in rest.split(","):
        name, sep, value = item.strip().partition("=")
        if not sep:
            raise KvStoreError.invalid_argument(f"malformed Authorization header: {header!r}")
        fields[name] = value
    try:
        credential = fields["Credential"].split("/")
        access_key, date, region, service, terminator = credential
        signed_headers = tuple(fields["SignedHeaders"].split(";"))
        signature = fields["Signature"]
    except (KeyError, ValueError) as e:
        raise KvStoreError.invalid_argument(f"malformed Authorization header: {header!r}") from e
    if terminator != "aws4_request":
        raise KvStoreError.invalid_argument(f"malformed credential scope: {fields['Credential']!r}")
    return Authorization(access_key, date, region, service, signed_headers, signature)


def verify_signature(
    method: str,
    path: str,
    query: Iterable[tuple[str, str]],
    headers: Mapping[str, str],
    secret_key: str,
) -> bool:
    """Re-derive the signature of a received request and compare it.

    ``headers`` are the received headers; only those named in the
    Authorization header's SignedHeaders take part.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    auth = parse_authorization(lowered.get("authorization", ""))
    try:
        signed = {name: lowered[name] for name in auth.signed_headers}
        timestamp = datetime.strptime(lowered["x-amz-date"], _AMZ_DATE_FORMAT).replace(
            tzinfo=timezone.utc
        )
        payload_hash = lowered["x-amz-content-sha256"]
    except (KeyError, ValueError):
        return False
    if f"{timestamp:%Y%m%d}" != auth.date:
        return False
    canonical = canonical_request(method, path, query, signed, payload_hash)
    expected = compute_signature(secret_key, timestamp, auth.region, auth.service, canonical)
    return hmac.compare_digest(expected, auth.signature)


@dataclass(frozen=True)
class S3RequestBuilder:
    """Immutable description of an unsigned request.

    Each ``with_*`` call returns a new builder; ``build`` signs a complete
    request, so a retry rebuilds with a fresh timestamp.
    """

    method: str
    url: str
    headers: tuple[tuple[str, str], ...] = ()
    query: tuple[tuple[str, str], ...] = ()

    def with_header(self, name: str, value: str) -> S3RequestBuilder:
        return replace(self, headers=self.headers + ((name.lower(), value),))

    def with_query_parameter(self, name: str, value: str) -> S3RequestBuilder:
        return replace(self, query=self.query + ((name, value),))

    def full_url(self) -> str:
        if not self.query:
            return self.url
        return f"{self.url}?{canonical_query_string(self.query)}"

    def build(
        self,
        credentials: Credentials,
        region: str,
        payload_hash: str,
        timestamp: datetime,
        *,
        host_header: str | None = None,
        body: bytes = b"",
        service: str = "s3",
    ) -> HttpRequest:
        url = self.full_url()
        headers = dict(self.headers)
        if host_header:
            headers["host"] = host_header
        signed = RequestSigner(region, service).sign(
            self.method, url, headers, payload_hash, timestamp, credentials
        )
        return HttpRequest(method=self.method.upper(), url=url, headers=signed, body=body)
