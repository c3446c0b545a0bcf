"""
Durable on-device store backed by SQLite.

Every entity kind gets its own table keyed by record id. The business
data is kept as JSON next to the local-only sync metadata (sync status and
a monotonic version counter), with the secondary attributes the app
queries by mirrored into indexed columns.

The store is the single source of truth for the UI. All access goes
through one connection guarded by an asyncio lock, so every record write
is atomic and a transaction sees no interleaved writers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import StorageConnectionError, StorageIOError, ValidationError
from ..models import (
    EXPOSURES,
    OUTCOME_CHECK_INS,
    REASSURANCE_URGES,
    SESSIONS,
    SETTINGS,
    STREAKS,
    Envelope,
    SyncStatus,
)
from ..timestamps import parse_timestamp

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# Outbox of local deletions waiting to be pushed.
PENDING_DELETES = "pending_deletes"

# =============================================================================
# Table definitions - secondary index columns per table
# =============================================================================

TABLE_SCHEMAS: dict[str, tuple[tuple[str, str], ...]] = {
    EXPOSURES: (("order_index", "INTEGER"), ("created_at", "TEXT")),
    SESSIONS: (("exposure_id", "TEXT"), ("started_at", "TEXT")),
    STREAKS: (("last_activity_date", "TEXT"),),
    SETTINGS: (),
    OUTCOME_CHECK_INS: (
        ("session_id", "TEXT"),
        ("exposure_id", "TEXT"),
        ("scheduled_at", "TEXT"),
    ),
    REASSURANCE_URGES: (("created_at", "TEXT"),),
    PENDING_DELETES: (("table_name", "TEXT"),),
}

# Index columns holding timestamps; stored with fixed precision so that
# lexicographic order matches chronological order.
TIMESTAMP_INDEXES = frozenset({"created_at", "started_at", "scheduled_at", "last_activity_date"})


@dataclass
class LocalStoreConfig:
    """Configuration for the local store."""

    db_path: str | Path = ":memory:"

    @classmethod
    def from_env(cls) -> LocalStoreConfig:
        """Create config from environment variables."""
        return cls(db_path=os.environ.get("ANCHOR_DB_PATH", ":memory:"))


def _validate_table(table: str) -> None:
    if table not in TABLE_SCHEMAS:
        raise ValidationError("table", "unknown table", table)


def _index_columns(table: str) -> tuple[str, ...]:
    return tuple(name for name, _ in TABLE_SCHEMAS[table])


def _index_value(column: str, value: Any) -> Any:
    if column in TIMESTAMP_INDEXES:
        parsed = parse_timestamp(value)
        return parsed.isoformat(timespec="microseconds") if parsed else None
    if isinstance(value, SyncStatus):
        return value.value
    return value


def _row_to_envelope(row: Any) -> Envelope:
    return Envelope(
        data=json.loads(row[0]),
        sync_status=SyncStatus(row[1]),
        version=row[2],
    )


class Transaction:
    """Operations bound to an open write transaction.

    Obtained from ``LocalStore.transaction``. Only the tables named when the
    transaction was opened may be touched.
    """

    def __init__(self, conn: aiosqlite.Connection, tables: tuple[str, ...]):
        self._conn = conn
        self.tables = tables

    def _check(self, table: str) -> None:
        if table not in self.tables:
            raise ValidationError("table", "not part of this transaction", table)

    async def get(self, table: str, record_id: str) -> Envelope | None:
        self._check(table)
        return await _select_one(self._conn, table, record_id)

    async def query(self, table: str, **kwargs: Any) -> list[Envelope]:
        self._check(table)
        return await _select(self._conn, table, **kwargs)

    async def put(self, table: str, envelope: Envelope) -> Envelope:
        """Insert or fully replace a record, bumping its version."""
        self._check(table)
        try:
            existing = await _select_one(self._conn, table, envelope.id)
            version = max(existing.version if existing else 0, envelope.version) + 1
            stored = Envelope(
                data=dict(envelope.data), sync_status=envelope.sync_status, version=version
            )
            await _write_row(self._conn, table, stored)
            return stored
        except aiosqlite.Error as e:
            raise StorageIOError("put", table, e) from e

    async def update(
        self,
        table: str,
        record_id: str,
        fields: dict[str, Any],
        sync_status: SyncStatus | None = None,
    ) -> Envelope | None:
        """Merge fields into an existing record. No-op when the id is absent."""
        self._check(table)
        try:
            existing = await _select_one(self._conn, table, record_id)
            if existing is None:
                logger.debug(
                    "Update skipped, record absent",
                    extra={"table": table, "record_id": record_id},
                )
                return None
            data = {**existing.data, **fields, "id": record_id}
            stored = Envelope(
                data=data,
                sync_status=sync_status or existing.sync_status,
                version=existing.version + 1,
            )
            await _write_row(self._conn, table, stored)
            return stored
        except aiosqlite.Error as e:
            raise StorageIOError("update", table, e) from e

    async def set_status(
        self,
        table: str,
        record_id: str,
        sync_status: SyncStatus,
        expected_version: int | None = None,
    ) -> bool:
        """Change only the sync status; data and version are left alone.

        When ``expected_version`` is given the status only changes if the
        record still carries that version.
        """
        self._check(table)
        sql = f"UPDATE {table} SET sync_status = ? WHERE id = ?"
        params: list[Any] = [sync_status.value, record_id]
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(expected_version)
        try:
            cursor = await self._conn.execute(sql, params)
            return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise StorageIOError("set_status", table, e) from e

    async def delete(self, table: str, record_id: str) -> bool:
        self._check(table)
        try:
            cursor = await self._conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise StorageIOError("delete", table, e) from e


# =============================================================================
# SQL helpers
# =============================================================================


async def _select_one(conn: aiosqlite.Connection, table: str, record_id: str) -> Envelope | None:
    async with conn.execute(
        f"SELECT data, sync_status, version FROM {table} WHERE id = ?", (record_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_envelope(row) if row else None


async def _select(
    conn: aiosqlite.Connection,
    table: str,
    *,
    index: str | None = None,
    equals: Any = None,
    lower: Any = None,
    upper: Any = None,
    sync_status: SyncStatus | Iterable[SyncStatus] | None = None,
    reverse: bool = False,
    limit: int | None = None,
) -> list[Envelope]:
    if index is not None and index not in _index_columns(table) and index != "sync_status":
        raise ValidationError("index", f"not an index of {table}", index)
    if index is None and (equals is not None or lower is not None or upper is not None):
        raise ValidationError("index", "range queries require an index")

    clauses: list[str] = []
    params: list[Any] = []
    if equals is not None:
        clauses.append(f"{index} = ?")
        params.append(_index_value(index, equals))
    if lower is not None:
        clauses.append(f"{index} > ?")
        params.append(_index_value(index, lower))
    if upper is not None:
        clauses.append(f"{index} <= ?")
        params.append(_index_value(index, upper))
    if sync_status is not None:
        statuses = [sync_status] if isinstance(sync_status, SyncStatus) else list(sync_status)
        clauses.append(f"sync_status IN ({', '.join('?' for _ in statuses)})")
        params.extend(s.value for s in statuses)

    sql = f"SELECT data, sync_status, version FROM {table}"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    direction = "DESC" if reverse else "ASC"
    order_by = f"{index} {direction}, id {direction}" if index else f"id {direction}"
    sql += f" ORDER BY {order_by}"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)

    try:
        async with conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
    except aiosqlite.Error as e:
        raise StorageIOError("query", table, e) from e
    return [_row_to_envelope(row) for row in rows]


async def _write_row(conn: aiosqlite.Connection, table: str, envelope: Envelope) -> None:
    columns = _index_columns(table)
    names = ("id", "data", "sync_status", "version", *columns)
    values = (
        envelope.id,
        json.dumps(envelope.data),
        envelope.sync_status.value,
        envelope.version,
        *(_index_value(c, envelope.data.get(c)) for c in columns),
    )
    updates = ", ".join(f"{name} = excluded.{name}" for name in names[1:])
    await conn.execute(
        f"INSERT INTO {table} ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)}) "
        f"ON CONFLICT (id) DO UPDATE SET {updates}",
        values,
    )


# =============================================================================
# Store
# =============================================================================


class LocalStore:
    """
    Namespaced, schema-versioned local tables on SQLite.

    Features:
    - One table per entity kind, keyed by record id
    - Secondary indexes for ordering and foreign-key style lookups
    - Writes committed before the coroutine returns
    - Multi-record transactions with all-or-nothing semantics
    """

    def __init__(self, config: LocalStoreConfig):
        self.config = config
        self.conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    async def create(cls, config: LocalStoreConfig | None = None) -> LocalStore:
        """Create and initialize a local store."""
        if config is None:
            config = LocalStoreConfig.from_env()

        store = cls(config)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Open the connection and create or migrate the schema."""
        if self._initialized:
            return

        try:
            # Autocommit mode; transactions are opened explicitly.
            self.conn = await aiosqlite.connect(str(self.config.db_path), isolation_level=None)
            await self.conn.execute("PRAGMA journal_mode = WAL")
            await self.conn.execute("PRAGMA synchronous = FULL")

            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)

            for table in TABLE_SCHEMAS:
                await self._create_table(table)

            schema_version = await self._get_schema_version()
            if schema_version < 2:
                await self._migrate_add_version_counters()

            self._initialized = True
            logger.info(f"Local store initialized: {self.config.db_path}")

        except aiosqlite.Error as e:
            raise StorageConnectionError(str(self.config.db_path), e) from e

    async def close(self) -> None:
        """Close the SQLite connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    async def __aenter__(self) -> LocalStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Schema Management
    # =========================================================================

    async def _create_table(self, table: str) -> None:
        columns = "".join(
            f",\n                {name} {sql_type}" for name, sql_type in TABLE_SCHEMAS[table]
        )
        await self.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT NOT NULL PRIMARY KEY,
                data TEXT NOT NULL,
                sync_status TEXT NOT NULL DEFAULT 'pending',
                version INTEGER NOT NULL DEFAULT 0{columns}
            )
        """)
        await self.conn.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_sync_status ON {table} (sync_status)"
        )
        for name, _ in TABLE_SCHEMAS[table]:
            await self.conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_{name} ON {table} ({name}, id)"
            )

    async def _get_schema_version(self) -> int:
        """Get the current schema version (defaults to 1 for pre-versioned DBs)."""
        async with self.conn.execute(
            "SELECT value FROM schema_meta WHERE key = 'version'"
        ) as cursor:
            result = await cursor.fetchone()
        return int(result[0]) if result else 1

    async def _set_schema_version(self, version: int) -> None:
        await self.conn.execute(
            """
            INSERT INTO schema_meta (key, value) VALUES ('version', ?)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value
            """,
            (str(version),),
        )

    async def _migrate_add_version_counters(self) -> None:
        """Add per-record version counters to tables created by schema v1."""
        for table in TABLE_SCHEMAS:
            async with self.conn.execute(f"PRAGMA table_info({table})") as cursor:
                columns = [col[1] for col in await cursor.fetchall()]
            if "version" not in columns:
                logger.info(f"Adding version column to {table}")
                await self.conn.execute(
                    f"ALTER TABLE {table} ADD COLUMN version INTEGER NOT NULL DEFAULT 0"
                )
        await self._set_schema_version(SCHEMA_VERSION)

    # =========================================================================
    # Record Operations
    # =========================================================================

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise StorageIOError(operation, cause=RuntimeError("Not initialized"))
        return self.conn

    @asynccontextmanager
    async def transaction(self, tables: Iterable[str]) -> AsyncIterator[Transaction]:
        """Exclusive write access across the named tables.

        Commits when the block exits normally and rolls back every write
        made inside it if the block raises.
        """
        names = tuple(tables)
        for table in names:
            _validate_table(table)
        conn = self._require_conn("transaction")

        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(conn, names)
            except BaseException:
                await conn.rollback()
                raise
            else:
                try:
                    await conn.commit()
                except aiosqlite.Error as e:
                    await conn.rollback()
                    raise StorageIOError("commit", ",".join(names), e) from e

    async def put(self, table: str, envelope: Envelope) -> Envelope:
        """Insert or fully replace a record by id."""
        async with self.transaction([table]) as txn:
            return await txn.put(table, envelope)

    async def get(self, table: str, record_id: str) -> Envelope | None:
        _validate_table(table)
        conn = self._require_conn("get")
        async with self._lock:
            try:
                return await _select_one(conn, table, record_id)
            except aiosqlite.Error as e:
                raise StorageIOError("get", table, e) from e

    async def update(
        self,
        table: str,
        record_id: str,
        fields: dict[str, Any],
        sync_status: SyncStatus | None = None,
    ) -> Envelope | None:
        """Merge fields into an existing record; None if it does not exist."""
        async with self.transaction([table]) as txn:
            return await txn.update(table, record_id, fields, sync_status)

    async def query(self, table: str, **kwargs: Any) -> list[Envelope]:
        """Return records matching an index range and/or sync status.

        Keyword args: index, equals, lower (exclusive), upper (inclusive),
        sync_status, reverse, limit. Results are ordered by the index column
        and then by id.
        """
        _validate_table(table)
        conn = self._require_conn("query")
        async with self._lock:
            return await _select(conn, table, **kwargs)

    async def delete(self, table: str, record_id: str) -> bool:
        """Remove a record permanently."""
        async with self.transaction([table]) as txn:
            return await txn.delete(table, record_id)

    async def count(self, table: str, sync_status: SyncStatus | None = None) -> int:
        _validate_table(table)
        conn = self._require_conn("count")
        sql = f"SELECT COUNT(*) FROM {table}"
        params: tuple[Any, ...] = ()
        if sync_status is not None:
            sql += " WHERE sync_status = ?"
            params = (sync_status.value,)
        async with self._lock:
            async with conn.execute(sql, params) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0

    async def mark_synced(self, table: str, versions: dict[str, int]) -> list[str]:
        """Flip records to synced if they still carry the pushed version.

        Records edited after their data was pushed keep their pending
        status and are shipped again by the next push.

        Returns:
            Ids that were marked synced
        """
        flipped: list[str] = []
        async with self.transaction([table]) as txn:
            for record_id, version in versions.items():
                if await txn.set_status(table, record_id, SyncStatus.SYNCED, version):
                    flipped.append(record_id)

        skipped = len(versions) - len(flipped)
        if skipped:
            logger.info(
                "Records changed during push, left pending",
                extra={"table": table, "skipped": skipped},
            )
        return flipped
