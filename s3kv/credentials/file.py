from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

import anyio

from s3kv.credentials.base import Credentials, CredentialSource
from s3kv.errors import KvStoreError

CREDENTIALS_FILE_VAR = "AWS_SHARED_CREDENTIALS_FILE"
PROFILE_VAR = "AWS_PROFILE"
DEFAULT_PROFILE = "default"


@dataclass
class FileCredentialSource(CredentialSource):
    """Credentials from an INI shared-credentials file (``~/.aws/credentials``)."""

    filename: str | None = None
    profile: str | None = None
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)

    def resolved_filename(self) -> str:
        if self.filename:
            return self.filename
        if self.environ.get(CREDENTIALS_FILE_VAR):
            return self.environ[CREDENTIALS_FILE_VAR]
        return os.path.join(os.path.expanduser("~"), ".aws", "credentials")

    def resolved_profile(self) -> str:
        return self.profile or self.environ.get(PROFILE_VAR) or DEFAULT_PROFILE

    async def resolve(self) -> Credentials:
        filename = self.resolved_filename()
        profile = self.resolved_profile()
        try:
            text = await anyio.Path(filename).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise KvStoreError.permission_denied(f"cannot read credentials file {filename}: {e}") from e
        # secrets may contain '%', so values are read raw
        parser = configparser.ConfigParser(interpolation=None)
        try:
            parser.read_string(text, source=filename)
            if not parser.has_section(profile):
                raise KvStoreError.permission_denied(f"profile {profile!r} not found in {filename}")
            section = parser[profile]
            access_key = section.get("aws_access_key_id", "").strip()
            secret_key = section.get("aws_secret_access_key", "").strip()
            session_token = section.get("aws_session_token", "").strip() or None
        except configparser.Error as e:
            raise KvStoreError.permission_denied(f"malformed credentials file {filename}: {e}") from e
        if not access_key or not secret_key:
            raise KvStoreError.permission_denied(f"profile {profile!r} in {filename} has no keys")
        return Credentials(access_key=access_key, secret_key=secret_key, session_token=session_token)
