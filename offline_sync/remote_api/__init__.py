# offline_sync/remote_api/__init__.py
from .client import HTTPRemoteClient, RemoteClient
from .exceptions import (
    APIConnectionError,
    APIResponseError,
    AuthenticationError,
    NetworkUnavailableError,
    PermanentAPIResponseError,
    PermanentRemoteError,
    RemoteNotFoundError,
    SyncAPIError,
    TransientAPIResponseError,
    TransientRemoteError,
)
from .schemas import RemoteRecord

__all__ = [
    "RemoteClient", "HTTPRemoteClient", "RemoteRecord",
    "SyncAPIError", "TransientRemoteError", "PermanentRemoteError",
    "NetworkUnavailableError", "APIConnectionError", "APIResponseError",
    "TransientAPIResponseError", "PermanentAPIResponseError",
    "RemoteNotFoundError", "AuthenticationError",
]
