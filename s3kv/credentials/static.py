from __future__ import annotations

from dataclasses import dataclass

from s3kv.credentials.base import Credentials, CredentialSource
from s3kv.errors import KvStoreError


@dataclass
class StaticCredentialSource(CredentialSource):
    credentials: Credentials

    async def resolve(self) -> Credentials:
        if not self.credentials.access_key or not self.credentials.secret_key:
            raise KvStoreError.permission_denied("static credentials are incomplete")
        return self.credentials


@dataclass
class AnonymousCredentialSource(CredentialSource):
    async def resolve(self) -> Credentials:
        return Credentials.anonymous_credentials()
