"""Remote sync client.

The only place that performs I/O against the remote store.
"""

from chatsync.remote.base import (
    ChangeHandler,
    RejectedError,
    RejectionReason,
    RemoteError,
    RemoteSyncClient,
    Subscription,
    TransientRemoteError,
)
from chatsync.remote.http import HttpRemoteClient
from chatsync.remote.memory import InMemoryRemoteStore, LocalRemoteClient

__all__ = [
    "ChangeHandler",
    "HttpRemoteClient",
    "InMemoryRemoteStore",
    "LocalRemoteClient",
    "RejectedError",
    "RejectionReason",
    "RemoteError",
    "RemoteSyncClient",
    "Subscription",
    "TransientRemoteError",
]
