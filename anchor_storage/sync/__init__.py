"""
Sync module for pushing local changes to, and pulling remote changes from,
the remote store.
"""

from .engine import SyncConfig, SyncEngine, SyncResult, SyncState, SyncStatusReport
from .retry import RetryConfig, is_retryable, retry_with_backoff

__all__ = [
    "RetryConfig",
    "SyncConfig",
    "SyncEngine",
    "SyncResult",
    "SyncState",
    "SyncStatusReport",
    "is_retryable",
    "retry_with_backoff",
]
