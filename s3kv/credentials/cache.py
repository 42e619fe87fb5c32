from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import anyio

from s3kv.credentials.base import Credentials, CredentialSource, utcnow
from s3kv.errors import KvStoreError

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_MARGIN = timedelta(seconds=60)


@dataclass
class _Refresh:
    done: anyio.Event = field(default_factory=anyio.Event)
    credentials: Credentials | None = None
    error: KvStoreError | None = None


class CredentialCache:
    """Shared, refresh-deduplicating holder for a source's credentials.

    While the cached credentials are fresh, ``get`` returns them without
    locking. Otherwise the first caller resolves and every concurrent caller
    waits for that same resolution. If the resolving caller is cancelled, a
    waiter takes over so the cache never stays stuck mid-refresh.
    """

    def __init__(
        self,
        source: CredentialSource,
        *,
        expiry_margin: timedelta = DEFAULT_EXPIRY_MARGIN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = source
        self._expiry_margin = expiry_margin
        self._clock = clock
        self._credentials: Credentials | None = None
        self._refresh: _Refresh | None = None
        self._resolutions = 0

    @property
    def source(self) -> CredentialSource:
        return self._source

    @property
    def resolutions(self) -> int:
        """Number of times the underlying source has been asked to resolve."""
        return self._resolutions

    def _fresh(self) -> Credentials | None:
        credentials = self._credentials
        if credentials is None or credentials.expired(self._clock(), self._expiry_margin):
            return None
        return credentials

    async def get(self) -> Credentials:
        while True:
            credentials = self._fresh()
            if credentials is not None:
                return credentials
            refresh = self._refresh
            if refresh is None:
                return await self._resolve()
            await refresh.done.wait()
            if refresh.error is not None:
                raise refresh.error
            if refresh.credentials is not None:
                return refresh.credentials
            # the resolving caller was cancelled; try again

    async def _resolve(self) -> Credentials:
        refresh = self._refresh = _Refresh()
        self._resolutions += 1
        try:
            credentials = await self._source.resolve()
            refresh.credentials = credentials
            self._credentials = credentials
        except KvStoreError as e:
            refresh.error = e
            logger.warning("credential resolution failed: %s", e)
            raise
        finally:
            # a cancelled resolve leaves both result fields unset
            if self._refresh is refresh:
                self._refresh = None
            refresh.done.set()
        logger.info(
            "resolved credentials for access key %s (expires %s)",
            credentials.access_key[:4] + "...",
            credentials.expiration or "never",
        )
        return credentials

    def invalidate(self) -> None:
        """Drop the cached credentials so the next ``get`` re-resolves."""
        if self._credentials is not None:
            logger.info("invalidating cached credentials")
        self._credentials = None
