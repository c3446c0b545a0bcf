"""
Cosmos DB remote store.

Each local table maps to one container partitioned by ``/user_id``, so a
user's documents in a table share a logical partition and a push can be
committed as a single transactional batch. Remote changes are read from
the container's change feed.

The change feed does not report hard deletes, so deletions are written as
tombstones (``deleted: true``) that Cosmos expires through a per-item TTL.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from azure.core.pipeline.transport import AioHttpTransport
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import CosmosBatchOperationError, CosmosHttpResponseError
from azure.identity.aio import DefaultAzureCredential

from ..exceptions import AuthenticationError, StorageConnectionError, StorageIOError, SyncError
from ..models import SYNCED_TABLES
from ..timestamps import to_iso, utc_now
from .base import (
    ChangeCallback,
    ChangeType,
    RemoteChange,
    RemoteStore,
    RemoteWrite,
    Subscription,
)

logger = logging.getLogger(__name__)

AUTH_KEY = "key"
AUTH_DEFAULT_CREDENTIAL = "default_credential"

PARTITION_KEY_PATH = "/user_id"

# Cosmos caps a transactional batch at 100 operations.
MAX_BATCH_OPERATIONS = 100

# Cosmos system properties and local routing fields, never shown to the engine.
SYSTEM_FIELDS = frozenset(
    {"_rid", "_self", "_etag", "_attachments", "_ts", "_lsn", "user_id", "ttl"}
)

TOMBSTONE_FIELD = "deleted"


@dataclass
class CosmosRemoteConfig:
    """Configuration for the Cosmos DB remote store."""

    endpoint: str
    database_name: str = "anchor"
    auth_method: str = AUTH_DEFAULT_CREDENTIAL
    key: str | None = None
    poll_interval: float = 2.0  # seconds between change feed polls
    tombstone_ttl: int = 30 * 24 * 3600  # seconds

    @classmethod
    def from_env(cls) -> CosmosRemoteConfig:
        """Create config from environment variables."""
        endpoint = os.environ.get("ANCHOR_COSMOS_ENDPOINT")
        database = os.environ.get("ANCHOR_COSMOS_DATABASE", "anchor")
        auth_method = os.environ.get("ANCHOR_COSMOS_AUTH_METHOD", AUTH_DEFAULT_CREDENTIAL)
        key = os.environ.get("ANCHOR_COSMOS_KEY")
        poll_interval = float(os.environ.get("ANCHOR_COSMOS_POLL_INTERVAL", "2.0"))

        if not endpoint:
            raise AuthenticationError("cosmos", "ANCHOR_COSMOS_ENDPOINT not set")

        if auth_method == AUTH_KEY and not key:
            raise AuthenticationError("cosmos", "ANCHOR_COSMOS_KEY required for key auth")

        return cls(
            endpoint=endpoint,
            database_name=database,
            auth_method=auth_method,
            key=key,
            poll_interval=poll_interval,
        )


def strip_system_fields(doc: dict[str, Any]) -> dict[str, Any]:
    """Remove Cosmos bookkeeping properties from a document."""
    return {k: v for k, v in doc.items() if k not in SYSTEM_FIELDS}


class CosmosChangeFeedSubscription(Subscription):
    """Polls one user's partition of a container's change feed.

    The first poll starts from the beginning of the feed, so every existing
    document is reported as ADDED before live changes arrive.
    """

    def __init__(
        self,
        container: ContainerProxy,
        user_id: str,
        table: str,
        callback: ChangeCallback,
        poll_interval: float,
    ):
        self._container = container
        self._user_id = user_id
        self._table = table
        self._callback = callback
        self._poll_interval = poll_interval
        self._seen: set[str] = set()
        self._continuation: str | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.debug(
                "Change feed listener cancelled",
                extra={"table": self._table, "user_id": self._user_id},
            )

    def classify(self, doc: dict[str, Any]) -> RemoteChange:
        """Turn a change feed document into a typed change."""
        doc_id = doc["id"]
        if doc.get(TOMBSTONE_FIELD):
            self._seen.discard(doc_id)
            return RemoteChange(ChangeType.REMOVED, doc_id)

        change_type = ChangeType.MODIFIED if doc_id in self._seen else ChangeType.ADDED
        self._seen.add(doc_id)
        return RemoteChange(change_type, doc_id, strip_system_fields(doc))

    async def poll_once(self) -> int:
        """Read and deliver everything new on the feed.

        Returns:
            Number of changes delivered
        """
        kwargs: dict[str, Any] = {"partition_key": self._user_id}
        if self._continuation is None:
            kwargs["start_time"] = "Beginning"
        else:
            kwargs["continuation"] = self._continuation

        delivered = 0
        async for doc in self._container.query_items_change_feed(**kwargs):
            try:
                await self._callback(self.classify(doc))
                delivered += 1
            except Exception as e:
                logger.error(
                    "Change callback failed",
                    extra={"table": self._table, "doc_id": doc.get("id"), "error": str(e)},
                )

        headers = self._container.client_connection.last_response_headers or {}
        self._continuation = headers.get("etag", self._continuation)
        return delivered

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except CosmosHttpResponseError as e:
                logger.warning(
                    "Change feed poll failed",
                    extra={"table": self._table, "status_code": e.status_code, "error": str(e)},
                )
            await asyncio.sleep(self._poll_interval)


class CosmosRemoteStore(RemoteStore):
    """
    Remote store on Azure Cosmos DB.

    Features:
    - One container per table, partitioned by user
    - Transactional batch per push (chunked at 100 operations)
    - Change feed polling for pull
    - Key or Azure AD (DefaultAzureCredential) authentication
    """

    def __init__(self, config: CosmosRemoteConfig):
        self.config = config
        self._client: CosmosClient | None = None
        self._credential: DefaultAzureCredential | None = None
        self._database: DatabaseProxy | None = None
        self._containers: dict[str, ContainerProxy] = {}
        self._subscriptions: list[CosmosChangeFeedSubscription] = []
        self._initialized = False

    @classmethod
    async def create(cls, config: CosmosRemoteConfig | None = None) -> CosmosRemoteStore:
        """Create and initialize a Cosmos remote store."""
        if config is None:
            config = CosmosRemoteConfig.from_env()

        store = cls(config)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Connect and ensure the database and containers exist."""
        if self._initialized:
            return

        try:
            if self.config.auth_method == AUTH_KEY:
                if not self.config.key:
                    raise AuthenticationError("cosmos", "Key required for key auth")
                credential: Any = self.config.key
            else:
                self._credential = DefaultAzureCredential()
                credential = self._credential
            # The aio client needs aiohttp; pin the transport so a missing install fails here
            self._client = CosmosClient(
                self.config.endpoint, credential=credential, transport=AioHttpTransport()
            )

            self._database = await self._client.create_database_if_not_exists(
                id=self.config.database_name
            )

            for table in SYNCED_TABLES:
                # default_ttl=-1 enables per-item TTL without expiring live documents
                self._containers[table] = await self._database.create_container_if_not_exists(
                    id=table,
                    partition_key=PartitionKey(path=PARTITION_KEY_PATH),
                    default_ttl=-1,
                )

            self._initialized = True
            logger.info(f"Cosmos remote store initialized: {self.config.endpoint}")

        except CosmosHttpResponseError as e:
            if e.status_code in (401, 403):
                raise AuthenticationError(self.config.endpoint, str(e)) from e
            raise StorageConnectionError(self.config.endpoint, e) from e

    async def close(self) -> None:
        """Cancel listeners and close Cosmos connections."""
        for subscription in self._subscriptions:
            await subscription.cancel()
        self._subscriptions = []

        if self._client:
            await self._client.close()
            self._client = None

        if self._credential:
            await self._credential.close()
            self._credential = None

        self._containers = {}
        self._initialized = False

    def _get_container(self, table: str) -> ContainerProxy:
        if not self._initialized:
            raise StorageIOError("get_container", cause=RuntimeError("Not initialized"))
        if table not in self._containers:
            raise StorageIOError("get_container", table, KeyError(f"Unknown container: {table}"))
        return self._containers[table]

    def _to_operation(self, user_id: str, write: RemoteWrite) -> tuple[str, tuple[dict[str, Any]]]:
        if write.is_delete:
            doc = {
                "id": write.doc_id,
                "user_id": user_id,
                TOMBSTONE_FIELD: True,
                "updated_at": to_iso(utc_now()),
                "ttl": self.config.tombstone_ttl,
            }
        else:
            doc = {**write.data, "id": write.doc_id, "user_id": user_id}
        return ("upsert", (doc,))

    async def commit_batch(
        self,
        user_id: str,
        table: str,
        writes: Sequence[RemoteWrite],
    ) -> None:
        """Upsert documents (and delete tombstones) as transactional batches.

        Batches larger than 100 operations are split; each chunk is atomic
        on its own.
        """
        if not writes:
            return

        container = self._get_container(table)
        operations = [self._to_operation(user_id, w) for w in writes]

        for start in range(0, len(operations), MAX_BATCH_OPERATIONS):
            chunk = operations[start : start + MAX_BATCH_OPERATIONS]
            try:
                await container.execute_item_batch(batch_operations=chunk, partition_key=user_id)
            except CosmosBatchOperationError as e:
                # An individual operation was rejected; the whole chunk rolled back
                raise SyncError(
                    f"Batch rejected at operation {e.error_index}",
                    table=table,
                    user_id=user_id,
                    cause=e,
                ) from e

        logger.debug(
            "Batch committed",
            extra={"table": table, "user_id": user_id, "writes": len(operations)},
        )

    async def subscribe(
        self,
        user_id: str,
        table: str,
        callback: ChangeCallback,
    ) -> Subscription:
        subscription = CosmosChangeFeedSubscription(
            container=self._get_container(table),
            user_id=user_id,
            table=table,
            callback=callback,
            poll_interval=self.config.poll_interval,
        )
        subscription.start()
        self._subscriptions = [s for s in self._subscriptions if s.active]
        self._subscriptions.append(subscription)
        return subscription
