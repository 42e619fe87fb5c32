from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from s3kv import signing
from s3kv.credentials.base import Credentials, CredentialSource, utcnow
from s3kv.errors import ErrorKind, KvStoreError
from s3kv.retry import RetryPolicy, RetryState, run_with_retry
from s3kv.s3xml import error_from_response, parse_assume_role, parse_timestamp
from s3kv.transport import HttpResponse, Transport

logger = logging.getLogger(__name__)

STS_API_VERSION = "2011-06-15"


@dataclass
class AssumeRoleCredentialSource(CredentialSource):
    """Exchange a base source's credentials for short-lived role credentials.

    The result carries the expiration returned by STS, which drives the
    cache's refresh.
    """

    base: CredentialSource
    transport: Transport
    role_arn: str
    session_name: str = "s3kv"
    region: str = "us-east-1"
    endpoint: str | None = None
    duration_seconds: int = 3600
    retries: RetryPolicy = field(default_factory=RetryPolicy)
    # a hung token exchange must not stall the store for long
    timeout: float = 10.0
    clock: Callable[[], datetime] = utcnow

    @property
    def url(self) -> str:
        if self.endpoint:
            return self.endpoint.rstrip("/") + "/"
        return f"https://sts.{self.region}.amazonaws.com/"

    async def resolve(self) -> Credentials:
        base = await self.base.resolve()
        form = [
            ("Action", "AssumeRole"),
            ("Version", STS_API_VERSION),
            ("RoleArn", self.role_arn),
            ("RoleSessionName", self.session_name),
            ("DurationSeconds", str(self.duration_seconds)),
        ]
        body = signing.canonical_query_string(form).encode()
        builder = signing.S3RequestBuilder("POST", self.url).with_header(
            "content-type", "application/x-www-form-urlencoded; charset=utf-8"
        )

        async def attempt(state: RetryState) -> HttpResponse:
            request = builder.build(
                base,
                self.region,
                signing.payload_sha256(body),
                self.clock(),
                body=body,
                service="sts",
            )
            response = await self.transport.issue_request(
                request, connect_timeout=state.remaining(), read_timeout=state.remaining()
            )
            if response.status_code != 200:
                raise error_from_response(response, role_arn=self.role_arn)
            return response

        try:
            response = await run_with_retry(
                attempt, self.retries, timeout=self.timeout, description="sts:AssumeRole"
            )
            fields = parse_assume_role(response.body)
            credentials = Credentials(
                access_key=fields["AccessKeyId"],
                secret_key=fields["SecretAccessKey"],
                session_token=fields["SessionToken"],
                expiration=parse_timestamp(fields["Expiration"]),
            )
        except KvStoreError as e:
            raise KvStoreError(
                ErrorKind.PERMISSION_DENIED,
                f"cannot assume role {self.role_arn}: {e.message}",
                status_code=e.status_code,
                code=e.code,
                context={"role_arn": self.role_arn, "cause_kind": e.kind.value},
                cause=e,
            ) from e
        logger.info(
            "assumed role %s, credentials expire at %s", self.role_arn, credentials.expiration
        )
        return credentials
