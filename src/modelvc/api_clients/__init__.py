"""HTTP clients for the cloud sync backend."""

from .base_client import BaseSyncAPIClient, TokenSupplier
from .network_error_handler import (
    NetworkErrorHandler,
    RetryConfig,
    UserGuidance,
    UserGuidanceProvider,
)
from .sync_client import (
    TREE_OBJECT_KEY,
    CloudSyncClient,
    RemoteObject,
    TransferTarget,
    commit_object_key,
)

__all__ = [
    "BaseSyncAPIClient",
    "CloudSyncClient",
    "NetworkErrorHandler",
    "RemoteObject",
    "RetryConfig",
    "TREE_OBJECT_KEY",
    "TokenSupplier",
    "TransferTarget",
    "UserGuidance",
    "UserGuidanceProvider",
    "commit_object_key",
]
