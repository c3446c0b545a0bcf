"""
Synchronization engine for the local store.

Keeps every local table eventually consistent with the remote store for
the signed-in user:
- Push: pending local records -> one atomic remote batch per table
- Pull: remote change feed -> local upsert marked synced
- Conflict detection: last-writer-wins on ``updated_at``
- Exponential backoff for failed pushes

The engine is started and stopped explicitly by whoever observes the
identity signal; it holds no authoritative state of its own.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from functools import partial
from typing import Any

from ..local.store import PENDING_DELETES, LocalStore
from ..logging_utils import StorageLoggerAdapter
from ..models import SYNCED_TABLES, Envelope, SyncStatus
from ..remote.base import ChangeType, RemoteChange, RemoteStore, RemoteWrite, Subscription
from ..timestamps import normalize_timestamps, parse_timestamp, to_iso, utc_now
from .retry import RetryConfig, retry_with_backoff

logger = logging.getLogger(__name__)

# Never shipped to, or accepted from, the remote store.
LOCAL_ONLY_FIELDS = frozenset({"sync_status", "version"})

UNSYNCED = (SyncStatus.PENDING, SyncStatus.CONFLICT)


class SyncState(Enum):
    """Current state of the sync engine."""

    STOPPED = "stopped"
    RUNNING = "running"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass
class SyncResult:
    """Result of a push."""

    success: bool
    pushed: int = 0
    deleted: int = 0
    skipped: int = 0  # changed locally while in flight, left pending
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0


@dataclass
class SyncConfig:
    """Configuration for the sync engine."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    # How long stop() waits for an in-flight push before giving up on it
    stop_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Create config from environment variables."""
        return cls(
            retry=RetryConfig.from_env(),
            stop_timeout=float(os.environ.get("ANCHOR_SYNC_STOP_TIMEOUT", "10.0")),
        )


@dataclass
class SyncStatusReport:
    """Snapshot of the engine for display."""

    state: SyncState
    user_id: str | None
    pending_changes: int
    last_sync: datetime | None
    last_error: str | None


def _without_local_fields(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in LOCAL_ONLY_FIELDS}


def _same_content(a: dict[str, Any], b: dict[str, Any]) -> bool:
    """Equal apart from the updated_at stamp."""
    strip = {"updated_at"}
    return {k: v for k, v in a.items() if k not in strip} == {
        k: v for k, v in b.items() if k not in strip
    }


class SyncEngine:
    """Bidirectional sync between the local store and a remote store.

    Lifecycle:
    - STOPPED: no listeners. Initial state, and after stop().
    - RUNNING: entered by start(user_id). Pending records are pushed once,
      then one change listener per table is opened in the user's namespace.

    Errors are logged and recorded on the engine, never raised to callers.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        config: SyncConfig | None = None,
        tables: tuple[str, ...] = SYNCED_TABLES,
    ):
        self.store = store
        self.remote = remote
        self.config = config or SyncConfig()
        self.tables = tables

        self._running = False
        self._user_id: str | None = None
        self._subscriptions: list[Subscription] = []
        self._lifecycle_lock = asyncio.Lock()
        self._push_lock = asyncio.Lock()
        self._last_sync: datetime | None = None
        self._last_error: str | None = None
        self._log = StorageLoggerAdapter(logger, {})

    @property
    def state(self) -> SyncState:
        if self._push_lock.locked():
            return SyncState.SYNCING
        if self._running and self._last_error is not None:
            return SyncState.ERROR
        return SyncState.RUNNING if self._running else SyncState.STOPPED

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def subscription_count(self) -> int:
        return sum(1 for s in self._subscriptions if s.active)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, user_id: str) -> None:
        """Start syncing for a user.

        Restarting for a different user tears down the previous user's
        listeners first.
        """
        async with self._lifecycle_lock:
            if self._running and self._user_id == user_id:
                return
            if self._running:
                await self._stop_locked()

            self._running = True
            self._user_id = user_id
            self._log = StorageLoggerAdapter(logger, {"user_id": user_id})
            self._log.info("Starting sync")

            await self.push_pending_changes(user_id)

            for table in self.tables:
                try:
                    subscription = await self.remote.subscribe(
                        user_id, table, partial(self._on_remote_change, user_id, table)
                    )
                except Exception as e:
                    self._last_error = f"Failed to subscribe to {table}: {e}"
                    self._log.error(self._last_error, extra={"table": table})
                else:
                    self._subscriptions.append(subscription)

    async def stop(self) -> None:
        """Cancel every listener and return to STOPPED.

        A push already in flight is allowed to finish (bounded by
        ``config.stop_timeout``) so its records get marked synced.
        """
        async with self._lifecycle_lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            try:
                await subscription.cancel()
            except Exception as e:
                self._log.warning(f"Failed to cancel subscription: {e}")

        if self._push_lock.locked():
            try:
                await asyncio.wait_for(self._wait_for_push(), self.config.stop_timeout)
            except TimeoutError:
                self._log.warning("In-flight push did not finish before stop timeout")

        if self._running:
            self._log.info("Sync stopped")
        self._running = False
        self._user_id = None
        self._log = StorageLoggerAdapter(logger, {})

    async def _wait_for_push(self) -> None:
        async with self._push_lock:
            pass

    # =========================================================================
    # Push
    # =========================================================================

    async def push_pending_changes(self, user_id: str) -> SyncResult:
        """Push every pending record, one atomic batch per table.

        Records are marked synced only if they were not edited while the
        batch was in flight. A failed table stays pending and is retried
        on the next push.
        """
        if not user_id:
            return SyncResult(success=False, errors=["No user to push for"])

        start_time = datetime.now(UTC)
        result = SyncResult(success=True)

        async with self._push_lock:
            for table in self.tables:
                try:
                    await self._push_table(user_id, table, result)
                except Exception as e:
                    message = f"Failed to push {table}: {e}"
                    result.errors.append(message)
                    self._log.error(message, extra={"table": table})

        result.success = not result.errors
        result.duration_ms = int((datetime.now(UTC) - start_time).total_seconds() * 1000)
        if result.success:
            self._last_sync = datetime.now(UTC)
            self._last_error = None
        else:
            self._last_error = result.errors[-1]

        if result.pushed or result.deleted or result.errors:
            self._log.info(
                "Push finished",
                extra={
                    "pushed": result.pushed,
                    "deleted": result.deleted,
                    "skipped": result.skipped,
                    "errors": len(result.errors),
                    "duration_ms": result.duration_ms,
                },
            )
        return result

    async def _push_table(self, user_id: str, table: str, result: SyncResult) -> None:
        envelopes = await self.store.query(table, sync_status=UNSYNCED)
        tombstones = await self.store.query(PENDING_DELETES, index="table_name", equals=table)
        if not envelopes and not tombstones:
            return

        stamp = to_iso(utc_now())
        writes = [
            RemoteWrite(e.id, {**_without_local_fields(e.data), "updated_at": stamp})
            for e in envelopes
        ]
        writes.extend(RemoteWrite(t.data["record_id"]) for t in tombstones)

        await retry_with_backoff(
            self.remote.commit_batch,
            user_id,
            table,
            writes,
            config=self.config.retry,
            context_msg=f"table={table}",
        )

        flipped = await self.store.mark_synced(table, {e.id: e.version for e in envelopes})
        if tombstones:
            async with self.store.transaction([PENDING_DELETES]) as txn:
                for tombstone in tombstones:
                    await txn.delete(PENDING_DELETES, tombstone.id)

        result.pushed += len(envelopes)
        result.skipped += len(envelopes) - len(flipped)
        result.deleted += len(tombstones)

    # =========================================================================
    # Pull
    # =========================================================================

    async def _on_remote_change(self, user_id: str, table: str, change: RemoteChange) -> None:
        # Late deliveries from a listener that belonged to a previous user
        if not self._running or user_id != self._user_id:
            return
        await self.apply_remote_change(table, change)

    async def apply_remote_change(self, table: str, change: RemoteChange) -> None:
        """Apply one remote change to the local store.

        Pulled records are written as synced so they are never pushed
        back. A local edit newer than the incoming write is kept and
        flagged as a conflict so the next push ships it.
        """
        try:
            if change.change_type is ChangeType.REMOVED:
                await self.store.delete(table, change.doc_id)
                self._log.debug("Removed from remote", extra={"table": table, "id": change.doc_id})
                return

            incoming = normalize_timestamps(_without_local_fields(change.data))
            incoming["id"] = change.doc_id

            async with self.store.transaction([table]) as txn:
                local = await txn.get(table, change.doc_id)
                if self._local_wins(local, incoming):
                    await txn.set_status(table, change.doc_id, SyncStatus.CONFLICT)
                    self._log.info(
                        "Local edit newer than remote, flagged conflict",
                        extra={"table": table, "id": change.doc_id},
                    )
                else:
                    await txn.put(table, Envelope(data=incoming, sync_status=SyncStatus.SYNCED))

        except Exception as e:
            self._last_error = f"Failed to apply {change.change_type.value} on {table}: {e}"
            self._log.error(self._last_error, extra={"table": table, "id": change.doc_id})

    @staticmethod
    def _local_wins(local: Envelope | None, incoming: dict[str, Any]) -> bool:
        if local is None or local.sync_status is SyncStatus.SYNCED:
            return False
        if _same_content(local.data, incoming):
            return False
        local_ts = local.updated_at
        remote_ts = parse_timestamp(incoming.get("updated_at"))
        if local_ts is None or remote_ts is None:
            return False
        return local_ts > remote_ts

    # =========================================================================
    # Status
    # =========================================================================

    async def pending_count(self) -> int:
        total = await self.store.count(PENDING_DELETES)
        for table in self.tables:
            for status in UNSYNCED:
                total += await self.store.count(table, status)
        return total

    async def status(self) -> SyncStatusReport:
        return SyncStatusReport(
            state=self.state,
            user_id=self._user_id,
            pending_changes=await self.pending_count(),
            last_sync=self._last_sync,
            last_error=self._last_error,
        )
