from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from s3kv.credentials.base import Credentials, CredentialSource
from s3kv.errors import ErrorKind, KvStoreError
from s3kv.retry import RetryPolicy, RetryState, run_with_retry
from s3kv.s3xml import error_from_response, parse_timestamp
from s3kv.transport import HttpRequest, HttpResponse, Transport

logger = logging.getLogger(__name__)

FULL_URI_VAR = "AWS_CONTAINER_CREDENTIALS_FULL_URI"
RELATIVE_URI_VAR = "AWS_CONTAINER_CREDENTIALS_RELATIVE_URI"
AUTHORIZATION_TOKEN_VAR = "AWS_CONTAINER_AUTHORIZATION_TOKEN"
CONTAINER_HOST = "http://169.254.170.2"


def container_endpoint(environ: Mapping[str, str] = os.environ) -> str | None:
    if environ.get(FULL_URI_VAR):
        return environ[FULL_URI_VAR]
    if environ.get(RELATIVE_URI_VAR):
        return CONTAINER_HOST + environ[RELATIVE_URI_VAR]
    return None


@dataclass
class EndpointCredentialSource(CredentialSource):
    """Fetch time-limited credentials from a JSON credential endpoint.

    The endpoint answers with ``AccessKeyId``, ``SecretAccessKey``, ``Token``
    and ``Expiration``, as the container credential endpoint does.
    """

    transport: Transport
    url: str
    authorization_token: str | None = None
    retries: RetryPolicy = field(default_factory=RetryPolicy)
    timeout: float = 10.0

    @classmethod
    def from_environment(
        cls, transport: Transport, environ: Mapping[str, str] = os.environ
    ) -> EndpointCredentialSource | None:
        url = container_endpoint(environ)
        if url is None:
            return None
        return cls(transport, url, environ.get(AUTHORIZATION_TOKEN_VAR) or None)

    async def resolve(self) -> Credentials:
        headers = {"accept": "application/json"}
        if self.authorization_token:
            headers["authorization"] = self.authorization_token
        request = HttpRequest("GET", self.url, headers)

        async def attempt(state: RetryState) -> HttpResponse:
            response = await self.transport.issue_request(
                request, connect_timeout=state.remaining(), read_timeout=state.remaining()
            )
            if response.status_code != 200:
                raise error_from_response(response, url=self.url)
            return response

        try:
            response = await run_with_retry(
                attempt, self.retries, timeout=self.timeout, description="credential endpoint"
            )
        except KvStoreError as e:
            raise KvStoreError(
                ErrorKind.PERMISSION_DENIED,
                f"credential endpoint {self.url} failed: {e.message}",
                status_code=e.status_code,
                code=e.code,
                context={"url": self.url, "cause_kind": e.kind.value},
                cause=e,
            ) from e
        try:
            data = json.loads(response.body)
            credentials = Credentials(
                access_key=data["AccessKeyId"],
                secret_key=data["SecretAccessKey"],
                session_token=data.get("Token") or None,
                expiration=parse_timestamp(data["Expiration"]) if data.get("Expiration") else None,
            )
        except (ValueError, KeyError, TypeError, AttributeError, KvStoreError) as e:
            raise KvStoreError.permission_denied(
                f"malformed response from credential endpoint {self.url}: {e!r}"
            ) from e
        logger.info("fetched credentials from %s, expiring at %s", self.url, credentials.expiration)
        return credentials
