"""
Local persistence.

The SQLite-backed store that is the UI's source of truth, and the
repository of named operations the UI writes through.
"""

from .repository import AnchorRepository, adaptive_wait_seconds
from .store import PENDING_DELETES, TABLE_SCHEMAS, LocalStore, LocalStoreConfig, Transaction

__all__ = [
    "AnchorRepository",
    "LocalStore",
    "LocalStoreConfig",
    "Transaction",
    "PENDING_DELETES",
    "TABLE_SCHEMAS",
    "adaptive_wait_seconds",
]
