from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from s3kv.credentials.base import Credentials, CredentialSource
from s3kv.errors import KvStoreError

ACCESS_KEY_VAR = "AWS_ACCESS_KEY_ID"
SECRET_KEY_VARS = ("AWS_SECRET_ACCESS_KEY", "AWS_SECRET_KEY_ID")
SESSION_TOKEN_VAR = "AWS_SESSION_TOKEN"


@dataclass
class EnvironmentCredentialSource(CredentialSource):
    # read at resolve time so that a refresh picks up new values
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)

    async def resolve(self) -> Credentials:
        access_key = self.environ.get(ACCESS_KEY_VAR)
        secret_key = next((self.environ[v] for v in SECRET_KEY_VARS if self.environ.get(v)), None)
        if not access_key or not secret_key:
            raise KvStoreError.permission_denied(
                f"{ACCESS_KEY_VAR} and {SECRET_KEY_VARS[0]} are not set"
            )
        return Credentials(
            access_key=access_key,
            secret_key=secret_key,
            session_token=self.environ.get(SESSION_TOKEN_VAR) or None,
        )
