from __future__ import annotations

import os
from collections.abc import Mapping
from typing import TYPE_CHECKING

from s3kv.credentials.base import (
    ChainCredentialSource,
    Credentials,
    CredentialSource,
    utcnow,
)
from s3kv.credentials.static import AnonymousCredentialSource, StaticCredentialSource
from s3kv.credentials.environment import EnvironmentCredentialSource
from s3kv.credentials.file import FileCredentialSource
from s3kv.credentials.assume_role import AssumeRoleCredentialSource
from s3kv.credentials.endpoint import EndpointCredentialSource
from s3kv.credentials.cache import CredentialCache

if TYPE_CHECKING:
    from s3kv.config import S3StoreConfig
    from s3kv.transport import Transport


def default_credential_source(
    config: S3StoreConfig,
    transport: Transport,
    environ: Mapping[str, str] = os.environ,
) -> CredentialSource:
    """Build the credential chain for ``config``.

    Order: static keys from the config, environment variables, the shared
    credentials file, then the container credential endpoint. With
    ``role_arn`` set, the chain's result is exchanged for role credentials.
    """
    sources: list[CredentialSource] = []
    if config.access_key_id and config.secret_access_key:
        sources.append(
            StaticCredentialSource(
                Credentials(
                    access_key=config.access_key_id,
                    secret_key=config.secret_access_key,
                    session_token=config.session_token,
                )
            )
        )
    sources.append(EnvironmentCredentialSource(environ))
    sources.append(FileCredentialSource(profile=config.profile, environ=environ))
    container = EndpointCredentialSource.from_environment(transport, environ)
    if container is not None:
        container.retries = config.retries
        container.timeout = config.credential_timeout
        sources.append(container)
    chain = ChainCredentialSource(sources)
    if config.role_arn:
        return AssumeRoleCredentialSource(
            base=chain,
            transport=transport,
            role_arn=config.role_arn,
            region=config.aws_region,
            retries=config.retries,
            timeout=config.credential_timeout,
        )
    return chain


__all__ = [
    "AnonymousCredentialSource",
    "AssumeRoleCredentialSource",
    "ChainCredentialSource",
    "CredentialCache",
    "CredentialSource",
    "Credentials",
    "EndpointCredentialSource",
    "EnvironmentCredentialSource",
    "FileCredentialSource",
    "StaticCredentialSource",
    "default_credential_source",
    "utcnow",
]
