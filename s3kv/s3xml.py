"""XML bodies of the S3 and STS REST APIs."""
from __future__ import annotations

import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any

from s3kv.errors import ErrorKind, KvStoreError, kind_for_status
from s3kv.transport import HttpResponse

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if _local(child.tag) == name]


def _text(element: ET.Element, name: str) -> str | None:
    for child in element.iter():
        if _local(child.tag) == name:
            return child.text or ""
    return None


def _parse(body: bytes) -> ET.Element:
    try:
        return ET.fromstring(body)
    except ET.ParseError as e:
        raise KvStoreError.internal(f"malformed XML response: {e}", cause=e) from e


def parse_timestamp(value: str) -> datetime:
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise KvStoreError.internal(f"malformed timestamp: {value!r}", cause=e) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def error_from_response(response: HttpResponse, **context: Any) -> KvStoreError:
    """Build a KvStoreError from a failed S3/STS response."""
    code: str | None = None
    message = ""
    if response.body:
        try:
            root = ET.fromstring(response.body)
        except ET.ParseError:
            message = response.body[:200].decode(errors="replace")
        else:
            code = _text(root, "Code")
            message = _text(root, "Message") or ""
    kind = kind_for_status(response.status_code, code)
    detail = f"HTTP {response.status_code}"
    if code:
        detail += f" {code}"
    if message:
        detail += f": {message}"
    request_id = response.header("x-amz-request-id")
    if request_id:
        context["request_id"] = request_id
    return KvStoreError(kind, detail, status_code=response.status_code, code=code, context=context)


def error_body(code: str, message: str, resource: str = "") -> bytes:
    root = ET.Element("Error")
    ET.SubElement(root, "Code").text = code
    ET.SubElement(root, "Message").text = message
    if resource:
        ET.SubElement(root, "Resource").text = resource
    return b'<?xml version="1.0" encoding="UTF-8"?>' + ET.tostring(root)


def create_bucket_body(region: str) -> bytes:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<CreateBucketConfiguration xmlns="{S3_NAMESPACE}">'
        f"<LocationConstraint>{region}</LocationConstraint>"
        "</CreateBucketConfiguration>"
    ).encode()


def parse_location_constraint(body: bytes) -> str | None:
    if not body.strip():
        return None
    return _text(_parse(body), "LocationConstraint") or None


def parse_list_objects(body: bytes) -> tuple[list[str], str | None]:
    """Return the keys of a ListObjectsV2 page and its continuation token."""
    root = _parse(body)
    if _local(root.tag) != "ListBucketResult":
        raise KvStoreError.internal(f"unexpected list response root: {_local(root.tag)}")
    keys = []
    for contents in _children(root, "Contents"):
        key = _text(contents, "Key")
        if key is not None:
            keys.append(key)
    truncated = (_text(root, "IsTruncated") or "false").strip().lower() == "true"
    token = _text(root, "NextContinuationToken") if truncated else None
    if truncated and not token:
        raise KvStoreError(
            ErrorKind.INTERNAL, "truncated list response without NextContinuationToken"
        )
    return keys, token


def list_objects_body(
    bucket: str,
    prefix: str,
    keys: list[tuple[str, str, int]],
    max_keys: int,
    next_token: str | None,
    continuation_token: str | None = None,
) -> bytes:
    """Serialize a ListObjectsV2 page; ``keys`` holds (key, etag, size)."""
    root = ET.Element("ListBucketResult", xmlns=S3_NAMESPACE)
    ET.SubElement(root, "Name").text = bucket
    ET.SubElement(root, "Prefix").text = prefix
    ET.SubElement(root, "KeyCount").text = str(len(keys))
    ET.SubElement(root, "MaxKeys").text = str(max_keys)
    ET.SubElement(root, "IsTruncated").text = "true" if next_token else "false"
    if continuation_token:
        ET.SubElement(root, "ContinuationToken").text = continuation_token
    if next_token:
        ET.SubElement(root, "NextContinuationToken").text = next_token
    for key, etag, size in keys:
        contents = ET.SubElement(root, "Contents")
        ET.SubElement(contents, "Key").text = key
        ET.SubElement(contents, "ETag").text = f'"{etag}"'
        ET.SubElement(contents, "Size").text = str(size)
    return b'<?xml version="1.0" encoding="UTF-8"?>' + ET.tostring(root)


def parse_assume_role(body: bytes) -> dict[str, str]:
    root = _parse(body)
    out = {}
    for name in ("AccessKeyId", "SecretAccessKey", "SessionToken", "Expiration"):
        value = _text(root, name)
        if not value:
            raise KvStoreError.internal(f"AssumeRole response is missing {name}")
        out[name] = value.strip()
    return out
