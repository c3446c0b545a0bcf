"""
Remote document store interface.

The remote store is a per-user namespace with one collection per local
table (``users/{user_id}/{table}/{id}``). The sync engine only needs two
capabilities from it: an atomic batched write and a per-collection change
feed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChangeType(Enum):
    """Kind of change reported by a remote change feed."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class RemoteWrite:
    """One document write inside a batch. ``data=None`` deletes the document."""

    doc_id: str
    data: dict[str, Any] | None = None

    @property
    def is_delete(self) -> bool:
        return self.data is None


@dataclass
class RemoteChange:
    """A change observed on a remote collection."""

    change_type: ChangeType
    doc_id: str
    data: dict[str, Any] = field(default_factory=dict)


ChangeCallback = Callable[[RemoteChange], Awaitable[None]]


def document_path(user_id: str, table: str, doc_id: str | None = None) -> str:
    """Namespace path of a collection or document."""
    path = f"users/{user_id}/{table}"
    return f"{path}/{doc_id}" if doc_id else path


class Subscription(ABC):
    """Handle for an open change-feed listener."""

    @property
    @abstractmethod
    def active(self) -> bool:
        """Whether the listener is still delivering changes."""
        ...

    @abstractmethod
    async def cancel(self) -> None:
        """Stop delivering changes. Safe to call more than once."""
        ...


class RemoteStore(ABC):
    """Abstract remote multi-tenant document store.

    Implementations must:
    - Apply every write of a batch or none of them (stores with a batch
      size cap may split it; each part must then be all-or-nothing)
    - Deliver changes of one collection in the order they were written
    - Report the first observation of a document as ADDED
    """

    @abstractmethod
    async def commit_batch(
        self,
        user_id: str,
        table: str,
        writes: Sequence[RemoteWrite],
    ) -> None:
        """Atomically apply writes to ``users/{user_id}/{table}``.

        Stores that cap the batch size commit oversized batches in atomic
        chunks, so a failure can leave earlier chunks applied. Writes are
        full-document upserts, so the retried push converges.

        Raises:
            Exception: Any failure; the caller keeps every write pending
        """
        ...

    @abstractmethod
    async def subscribe(
        self,
        user_id: str,
        table: str,
        callback: ChangeCallback,
    ) -> Subscription:
        """Open a persistent listener on ``users/{user_id}/{table}``.

        The listener first reports every existing document as ADDED, then
        every later change as it happens.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        ...
