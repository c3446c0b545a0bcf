"""
Shared test configuration and fixtures.

Provides a real in-memory SQLite local store, an in-memory remote store
with failure injection and manual change delivery, and a controllable
clock.
"""

from __future__ import annotations

import copy
from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta

import pytest

from anchor_storage.local import AnchorRepository, LocalStore, LocalStoreConfig
from anchor_storage.remote import (
    ChangeCallback,
    ChangeType,
    RemoteChange,
    RemoteStore,
    RemoteWrite,
    Subscription,
)
from anchor_storage.sync import RetryConfig, SyncConfig, SyncEngine


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSubscription(Subscription):
    """Listener whose changes are queued until the test delivers them."""

    def __init__(self, user_id: str, table: str, callback: ChangeCallback):
        self.user_id = user_id
        self.table = table
        self.callback = callback
        self.queue: list[RemoteChange] = []
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def cancel(self) -> None:
        self._active = False
        self.queue.clear()


class InMemoryRemoteStore(RemoteStore):
    """
    Remote store kept in dicts.

    - ``fail_next`` makes the next N batch commits raise ``fail_with``
    - ``on_commit`` runs after a successful commit (before the engine
      marks anything synced)
    - changes are queued per subscription and handed over by ``deliver()``
    """

    def __init__(self) -> None:
        self.documents: dict[tuple[str, str], dict[str, dict]] = defaultdict(dict)
        self.batches: list[tuple[str, str, list[RemoteWrite]]] = []
        self.subscriptions: list[FakeSubscription] = []
        self.fail_next = 0
        self.fail_with: Exception = ConnectionError("remote unavailable")
        self.commit_attempts = 0
        self.on_commit: Callable[[str, str, Sequence[RemoteWrite]], Awaitable[None]] | None = None
        self.closed = False

    async def commit_batch(self, user_id: str, table: str, writes: Sequence[RemoteWrite]) -> None:
        self.commit_attempts += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise self.fail_with

        self.batches.append((user_id, table, list(writes)))
        docs = self.documents[(user_id, table)]
        for write in writes:
            if write.is_delete:
                if docs.pop(write.doc_id, None) is not None:
                    self._emit(user_id, table, RemoteChange(ChangeType.REMOVED, write.doc_id))
            else:
                existed = write.doc_id in docs
                docs[write.doc_id] = copy.deepcopy({**write.data, "id": write.doc_id})
                change_type = ChangeType.MODIFIED if existed else ChangeType.ADDED
                self._emit(
                    user_id,
                    table,
                    RemoteChange(change_type, write.doc_id, copy.deepcopy(docs[write.doc_id])),
                )

        if self.on_commit is not None:
            await self.on_commit(user_id, table, writes)

    async def subscribe(self, user_id: str, table: str, callback: ChangeCallback) -> Subscription:
        subscription = FakeSubscription(user_id, table, callback)
        for doc_id, doc in self.documents[(user_id, table)].items():
            subscription.queue.append(RemoteChange(ChangeType.ADDED, doc_id, copy.deepcopy(doc)))
        self.subscriptions.append(subscription)
        return subscription

    async def close(self) -> None:
        self.closed = True

    def _emit(self, user_id: str, table: str, change: RemoteChange) -> None:
        for subscription in self.subscriptions:
            if subscription.active and (subscription.user_id, subscription.table) == (
                user_id,
                table,
            ):
                subscription.queue.append(copy.deepcopy(change))

    # Test helpers

    async def external_write(self, user_id: str, table: str, doc: dict) -> None:
        """A write made by another device."""
        await self.commit_batch(user_id, table, [RemoteWrite(doc["id"], doc)])

    async def deliver(self) -> int:
        """Hand every queued change to its listener, in order."""
        delivered = 0
        for subscription in list(self.subscriptions):
            while subscription.active and subscription.queue:
                change = subscription.queue.pop(0)
                await subscription.callback(change)
                delivered += 1
        return delivered

    def active_subscriptions(self, user_id: str | None = None) -> list[FakeSubscription]:
        return [
            s for s in self.subscriptions if s.active and (user_id is None or s.user_id == user_id)
        ]

    def writes_for(self, table: str, doc_id: str) -> list[RemoteWrite]:
        return [
            write
            for _, batch_table, writes in self.batches
            if batch_table == table
            for write in writes
            if write.doc_id == doc_id
        ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store():
    """Initialized local store on in-memory SQLite."""
    store = await LocalStore.create(LocalStoreConfig(db_path=":memory:"))
    yield store
    await store.close()


@pytest.fixture
def repository(store, clock) -> AnchorRepository:
    return AnchorRepository(store, clock=clock, tz=UTC)


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def sync_config() -> SyncConfig:
    """Retries without real sleeping."""
    return SyncConfig(retry=RetryConfig(max_retries=2, backoff_base=0.0), stop_timeout=1.0)


@pytest.fixture
async def engine(store, remote, sync_config):
    engine = SyncEngine(store, remote, sync_config)
    yield engine
    await engine.stop()
