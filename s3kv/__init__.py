from s3kv.errors import ErrorKind, KvStoreError
from s3kv.generation import (
    ByteRange,
    ListPage,
    ReadOptions,
    ReadResult,
    ReadState,
    StorageGeneration,
    WriteOptions,
    WriteResult,
)
from s3kv.retry import Outcome, RetryPolicy
from s3kv.config import S3StoreConfig
from s3kv.credentials import CredentialCache, Credentials, CredentialSource
from s3kv.signing import RequestSigner, S3RequestBuilder
from s3kv.transport import HttpRequest, HttpResponse, HttpxTransport, Transport
from s3kv.store import S3KeyValueStore

__all__ = [
    "ByteRange",
    "CredentialCache",
    "CredentialSource",
    "Credentials",
    "ErrorKind",
    "HttpRequest",
    "HttpResponse",
    "HttpxTransport",
    "KvStoreError",
    "ListPage",
    "Outcome",
    "ReadOptions",
    "ReadResult",
    "ReadState",
    "RequestSigner",
    "RetryPolicy",
    "S3KeyValueStore",
    "S3RequestBuilder",
    "S3StoreConfig",
    "StorageGeneration",
    "Transport",
    "WriteOptions",
    "WriteResult",
]
