from __future__ import annotations

import re
from dataclasses import MISSING, dataclass, field, fields
from typing import Any
from urllib.parse import urlsplit

from s3kv.retry import RetryPolicy

_DURATION_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*(ns|us|ms|s|m|h)\s*$")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")


def parse_duration(value: str | int | float) -> float:
    """Parse ``"1ms"``, ``"2.5s"`` or a number of seconds into seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")
    match = _DURATION_RE.match(value)
    if match is None:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit]


def format_duration(seconds: float) -> str:
    for unit in ("h", "m", "s", "ms", "us"):
        amount = round(seconds / _DURATION_UNITS[unit], 9)
        if amount >= 1 and float(amount).is_integer():
            return f"{int(amount)}{unit}"
    return f"{round(seconds / 1e-9)}ns"


def retry_policy_from_json(data: dict[str, Any]) -> RetryPolicy:
    kwargs: dict[str, Any] = {}
    if "max_retries" in data:
        kwargs["max_retries"] = int(data["max_retries"])
    if "initial_delay" in data:
        kwargs["initial_delay"] = parse_duration(data["initial_delay"])
    if "max_delay" in data:
        kwargs["max_delay"] = parse_duration(data["max_delay"])
    if "jitter" in data:
        kwargs["jitter"] = bool(data["jitter"])
    unknown = set(data) - {"max_retries", "initial_delay", "max_delay", "jitter"}
    if unknown:
        raise ValueError(f"unknown retry options: {sorted(unknown)}")
    return RetryPolicy(**kwargs)


def retry_policy_to_json(policy: RetryPolicy, include_defaults: bool = True) -> dict[str, Any]:
    default = RetryPolicy()
    out: dict[str, Any] = {}
    if include_defaults or policy.max_retries != default.max_retries:
        out["max_retries"] = policy.max_retries
    if include_defaults or policy.initial_delay != default.initial_delay:
        out["initial_delay"] = format_duration(policy.initial_delay)
    if include_defaults or policy.max_delay != default.max_delay:
        out["max_delay"] = format_duration(policy.max_delay)
    if include_defaults or policy.jitter != default.jitter:
        out["jitter"] = policy.jitter
    return out


# secrets are accepted from JSON but never written back out
_SECRET_FIELDS = {"secret_access_key", "session_token"}


@dataclass(frozen=True)
class S3StoreConfig:
    bucket: str
    aws_region: str
    # override for S3-compatible hosts; requests then use path-style URLs
    endpoint: str | None = None
    # prefix joined to every key
    path: str = ""
    # host used in the signature when it differs from the routed host
    host_header: str | None = None
    profile: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = field(default=None, repr=False)
    session_token: str | None = field(default=None, repr=False)
    role_arn: str | None = None
    connect_timeout: float = 15.0
    read_timeout: float = 15.0
    credential_timeout: float = 10.0
    retries: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if not _BUCKET_RE.match(self.bucket) or ".." in self.bucket:
            raise ValueError(f"invalid bucket name: {self.bucket!r}")
        if not self.aws_region:
            raise ValueError("aws_region is required")
        if self.endpoint is not None:
            parts = urlsplit(self.endpoint)
            if parts.scheme not in ("http", "https") or not parts.netloc:
                raise ValueError(f"endpoint must be an http(s) URL, got {self.endpoint!r}")
            if parts.query or parts.fragment:
                raise ValueError(f"endpoint must not have a query or fragment: {self.endpoint!r}")
        if self.path.startswith("/"):
            raise ValueError(f"path must not start with '/': {self.path!r}")
        if (self.access_key_id is None) != (self.secret_access_key is None):
            raise ValueError("access_key_id and secret_access_key must be set together")
        for name in ("connect_timeout", "read_timeout", "credential_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")

    @property
    def uses_path_style(self) -> bool:
        return self.endpoint is not None

    @property
    def base_url(self) -> str:
        if self.endpoint is not None:
            return f"{self.endpoint.rstrip('/')}/{self.bucket}"
        return f"https://{self.bucket}.s3.{self.aws_region}.amazonaws.com"

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> S3StoreConfig:
        data = dict(data)
        driver = data.pop("driver", "s3")
        if driver != "s3":
            raise ValueError(f"unsupported driver: {driver!r}")
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown config options: {sorted(unknown)}")
        if "retries" in data:
            data["retries"] = retry_policy_from_json(data["retries"])
        for name in ("connect_timeout", "read_timeout", "credential_timeout"):
            if name in data:
                data[name] = parse_duration(data[name])
        return cls(**data)

    def to_json(self, include_defaults: bool = True) -> dict[str, Any]:
        out: dict[str, Any] = {"driver": "s3"}
        for f in fields(self):
            if f.name in _SECRET_FIELDS:
                continue
            value = getattr(self, f.name)
            if f.name == "retries":
                retries = retry_policy_to_json(value, include_defaults)
                if include_defaults or retries:
                    out["retries"] = retries
                continue
            default = f.default if f.default_factory is MISSING else f.default_factory()
            if not include_defaults and value == default:
                continue
            if f.name in ("connect_timeout", "read_timeout", "credential_timeout"):
                value = format_duration(value)
            out[f.name] = value
        return out
