"""
Remote document store.

Defines the interface the sync engine talks to. The Cosmos DB
implementation lives in ``remote.cosmos``.
"""

from .base import (
    ChangeCallback,
    ChangeType,
    RemoteChange,
    RemoteStore,
    RemoteWrite,
    Subscription,
    document_path,
)

__all__ = [
    "ChangeCallback",
    "ChangeType",
    "RemoteChange",
    "RemoteStore",
    "RemoteWrite",
    "Subscription",
    "document_path",
]
