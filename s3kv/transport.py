from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from s3kv.errors import KvStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpRequest:
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    # header names are lower-cased
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


class Transport(Protocol):
    async def issue_request(
        self,
        request: HttpRequest,
        *,
        connect_timeout: float | None = None,
        read_timeout: float | None = None,
    ) -> HttpResponse:
        """Execute ``request``; network failures raise KvStoreError(UNAVAILABLE)."""
        ...


@dataclass
class HttpxTransport(Transport):
    client: httpx.AsyncClient

    @classmethod
    @asynccontextmanager
    async def connect(cls, **client_kwargs: object) -> AsyncIterator[HttpxTransport]:
        async with httpx.AsyncClient(**client_kwargs) as client:  # type: ignore[arg-type]
            yield cls(client)

    async def issue_request(
        self,
        request: HttpRequest,
        *,
        connect_timeout: float | None = None,
        read_timeout: float | None = None,
    ) -> HttpResponse:
        timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        try:
            response = await self.client.request(
                request.method,
                request.url,
                headers=dict(request.headers),
                content=request.body if request.body or request.method in ("PUT", "POST") else None,
                timeout=timeout,
            )
        except httpx.TransportError as e:
            logger.debug("%s %s failed: %r", request.method, request.url, e)
            raise KvStoreError.unavailable(
                f"{request.method} {request.url} failed: {e!r}", cause=e
            ) from e
        return HttpResponse(
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=response.content,
        )
