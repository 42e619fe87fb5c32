from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol

from s3kv.errors import KvStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    access_key: str
    secret_key: str = field(repr=False)
    session_token: str | None = field(default=None, repr=False)
    # None means the credentials never expire
    expiration: datetime | None = None

    @classmethod
    def anonymous_credentials(cls) -> Credentials:
        return cls(access_key="", secret_key="")

    @property
    def anonymous(self) -> bool:
        return not self.access_key

    def expired(self, now: datetime, margin: timedelta = timedelta(0)) -> bool:
        if self.expiration is None:
            return False
        return now >= self.expiration - margin


class CredentialSource(Protocol):
    async def resolve(self) -> Credentials:
        """Return credentials or raise KvStoreError(PERMISSION_DENIED)."""
        ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChainCredentialSource(CredentialSource):
    """Try each source in order; the first one that resolves wins."""

    sources: list[CredentialSource]

    async def resolve(self) -> Credentials:
        failures: list[str] = []
        for source in self.sources:
            try:
                credentials = await source.resolve()
            except KvStoreError as e:
                logger.debug("%s did not provide credentials: %s", type(source).__name__, e)
                failures.append(f"{type(source).__name__}: {e.message}")
                continue
            logger.debug("credentials resolved by %s", type(source).__name__)
            return credentials
        raise KvStoreError.permission_denied(
            "no credential source provided credentials: " + "; ".join(failures or ["none configured"])
        )
