"""
Tests for the SQLite local store.

Uses real SQLite (in-memory) for accurate testing.
"""

import aiosqlite
import pytest

from anchor_storage.exceptions import StorageIOError, ValidationError
from anchor_storage.local import PENDING_DELETES, LocalStore, LocalStoreConfig
from anchor_storage.local.store import SCHEMA_VERSION
from anchor_storage.models import EXPOSURES, SESSIONS, Envelope, SyncStatus


def exposure_doc(record_id: str, order_index: int, **extra) -> dict:
    return {
        "id": record_id,
        "trigger_description": f"exposure {record_id}",
        "suds_initial": 6,
        "suds_current": 6,
        "order_index": order_index,
        "created_at": "2024-03-01T12:00:00+00:00",
        "updated_at": "2024-03-01T12:00:00+00:00",
        **extra,
    }


class TestLocalStoreInitialization:
    """Tests for store creation and schema management."""

    @pytest.mark.asyncio
    async def test_create_with_defaults(self):
        """Store creates with default in-memory configuration."""
        store = await LocalStore.create(LocalStoreConfig())
        assert store._initialized is True
        assert await store.count(EXPOSURES) == 0
        await store.close()

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("ANCHOR_DB_PATH", "/tmp/anchor-test.db")
        assert str(LocalStoreConfig.from_env().db_path) == "/tmp/anchor-test.db"

    @pytest.mark.asyncio
    async def test_schema_version_recorded(self, store):
        assert await store._get_schema_version() == SCHEMA_VERSION

    @pytest.mark.asyncio
    async def test_migrates_v1_tables_without_version_column(self, tmp_path):
        """Tables created by schema v1 gain a version counter on open."""
        db_path = tmp_path / "v1.db"
        async with aiosqlite.connect(db_path) as conn:
            await conn.execute(
                "CREATE TABLE exposures (id TEXT PRIMARY KEY, data TEXT NOT NULL, "
                "sync_status TEXT NOT NULL DEFAULT 'pending', order_index INTEGER, "
                "created_at TEXT)"
            )
            await conn.execute(
                "INSERT INTO exposures (id, data, sync_status, order_index) VALUES (?, ?, ?, ?)",
                ("e1", '{"id": "e1", "order_index": 0}', "synced", 0),
            )
            await conn.commit()

        store = await LocalStore.create(LocalStoreConfig(db_path=db_path))
        try:
            envelope = await store.get(EXPOSURES, "e1")
            assert envelope is not None
            assert envelope.version == 0
            assert envelope.sync_status is SyncStatus.SYNCED
            assert await store._get_schema_version() == SCHEMA_VERSION
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_operations_before_initialize_fail(self):
        store = LocalStore(LocalStoreConfig())
        with pytest.raises(StorageIOError):
            await store.get(EXPOSURES, "x")


class TestRecordOperations:
    """Tests for put/get/update/delete."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        stored = await store.put(EXPOSURES, Envelope(exposure_doc("e1", 0)))
        assert stored.version == 1

        envelope = await store.get(EXPOSURES, "e1")
        assert envelope.data["trigger_description"] == "exposure e1"
        assert envelope.sync_status is SyncStatus.PENDING

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get(EXPOSURES, "missing") is None

    @pytest.mark.asyncio
    async def test_put_replaces_and_bumps_version(self, store):
        await store.put(EXPOSURES, Envelope(exposure_doc("e1", 0)))
        stored = await store.put(
            EXPOSURES, Envelope(exposure_doc("e1", 3), sync_status=SyncStatus.SYNCED)
        )

        assert stored.version == 2
        envelope = await store.get(EXPOSURES, "e1")
        assert envelope.data["order_index"] == 3
        assert envelope.sync_status is SyncStatus.SYNCED
        assert await store.count(EXPOSURES) == 1

    @pytest.mark.asyncio
    async def test_put_same_content_twice_is_idempotent_in_content(self, store):
        await store.put(EXPOSURES, Envelope(exposure_doc("e1", 0)))
        await store.put(EXPOSURES, Envelope(exposure_doc("e1", 0)))
        envelope = await store.get(EXPOSURES, "e1")
        assert envelope.data == exposure_doc("e1", 0)
        assert await store.count(EXPOSURES) == 1

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, store):
        await store.put(EXPOSURES, Envelope(exposure_doc("e1", 0), sync_status=SyncStatus.SYNCED))

        updated = await store.update(
            EXPOSURES, "e1", {"suds_current": 3}, sync_status=SyncStatus.PENDING
        )

        assert updated.data["suds_current"] == 3
        assert updated.data["suds_initial"] == 6
        assert updated.sync_status is SyncStatus.PENDING
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_update_missing_is_noop(self, store):
        assert await store.update(EXPOSURES, "missing", {"suds_current": 3}) is None
        assert await store.count(EXPOSURES) == 0

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.put(EXPOSURES, Envelope(exposure_doc("e1", 0)))
        assert await store.delete(EXPOSURES, "e1") is True
        assert await store.get(EXPOSURES, "e1") is None
        assert await store.delete(EXPOSURES, "e1") is False

    @pytest.mark.asyncio
    async def test_unknown_table_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.put("nope", Envelope({"id": "x"}))
        with pytest.raises(ValidationError):
            await store.query("nope")


class TestQueries:
    """Tests for index and sync status queries."""

    @pytest.mark.asyncio
    async def test_query_by_index_is_ordered(self, store):
        for record_id, index in [("c", 2), ("a", 0), ("b", 1)]:
            await store.put(EXPOSURES, Envelope(exposure_doc(record_id, index)))

        ids = [e.id for e in await store.query(EXPOSURES, index="order_index")]
        assert ids == ["a", "b", "c"]

        ids = [e.id for e in await store.query(EXPOSURES, index="order_index", reverse=True)]
        assert ids == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_ties_ordered_by_id(self, store):
        for record_id in ["z", "m", "a"]:
            await store.put(EXPOSURES, Envelope(exposure_doc(record_id, 0)))

        ids = [e.id for e in await store.query(EXPOSURES, index="order_index")]
        assert ids == ["a", "m", "z"]

    @pytest.mark.asyncio
    async def test_query_equals(self, store):
        for record_id, exposure_id in [("s1", "e1"), ("s2", "e2"), ("s3", "e1")]:
            await store.put(
                SESSIONS,
                Envelope(
                    {
                        "id": record_id,
                        "exposure_id": exposure_id,
                        "started_at": "2024-03-01T12:00:00+00:00",
                    }
                ),
            )

        ids = [e.id for e in await store.query(SESSIONS, index="exposure_id", equals="e1")]
        assert ids == ["s1", "s3"]

    @pytest.mark.asyncio
    async def test_timestamp_range_lower_exclusive_upper_inclusive(self, store):
        for record_id, started in [
            ("s1", "2024-03-01T10:00:00+00:00"),
            ("s2", "2024-03-01T11:00:00+00:00"),
            ("s3", "2024-03-01T12:00:00Z"),
        ]:
            await store.put(SESSIONS, Envelope({"id": record_id, "started_at": started}))

        envelopes = await store.query(
            SESSIONS,
            index="started_at",
            lower="2024-03-01T10:00:00+00:00",
            upper="2024-03-01T12:00:00+00:00",
        )
        assert [e.id for e in envelopes] == ["s2", "s3"]

    @pytest.mark.asyncio
    async def test_query_by_sync_status(self, store):
        await store.put(EXPOSURES, Envelope(exposure_doc("a", 0), sync_status=SyncStatus.SYNCED))
        await store.put(EXPOSURES, Envelope(exposure_doc("b", 1), sync_status=SyncStatus.PENDING))
        await store.put(EXPOSURES, Envelope(exposure_doc("c", 2), sync_status=SyncStatus.CONFLICT))

        pending = await store.query(EXPOSURES, sync_status=SyncStatus.PENDING)
        assert [e.id for e in pending] == ["b"]

        unsynced = await store.query(
            EXPOSURES, sync_status=(SyncStatus.PENDING, SyncStatus.CONFLICT)
        )
        assert [e.id for e in unsynced] == ["b", "c"]
        assert await store.count(EXPOSURES, SyncStatus.SYNCED) == 1

    @pytest.mark.asyncio
    async def test_limit(self, store):
        for i in range(5):
            await store.put(EXPOSURES, Envelope(exposure_doc(f"e{i}", i)))
        assert len(await store.query(EXPOSURES, index="order_index", limit=2)) == 2

    @pytest.mark.asyncio
    async def test_non_index_column_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.query(EXPOSURES, index="trigger_description", equals="x")


class TestTransactions:
    """Tests for multi-record transactions."""

    @pytest.mark.asyncio
    async def test_commit_on_success(self, store):
        async with store.transaction([EXPOSURES, PENDING_DELETES]) as txn:
            await txn.put(EXPOSURES, Envelope(exposure_doc("e1", 0)))
            await txn.put(
                PENDING_DELETES,
                Envelope({"id": "x", "table_name": EXPOSURES, "record_id": "old"}),
            )

        assert await store.count(EXPOSURES) == 1
        assert await store.count(PENDING_DELETES) == 1

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, store):
        await store.put(EXPOSURES, Envelope(exposure_doc("e1", 0)))

        with pytest.raises(RuntimeError):
            async with store.transaction([EXPOSURES]) as txn:
                await txn.update(EXPOSURES, "e1", {"order_index": 5})
                await txn.put(EXPOSURES, Envelope(exposure_doc("e2", 1)))
                raise RuntimeError("injected failure")

        envelope = await store.get(EXPOSURES, "e1")
        assert envelope.data["order_index"] == 0
        assert envelope.version == 1
        assert await store.get(EXPOSURES, "e2") is None

    @pytest.mark.asyncio
    async def test_table_outside_transaction_rejected(self, store):
        with pytest.raises(ValidationError):
            async with store.transaction([EXPOSURES]) as txn:
                await txn.put(SESSIONS, Envelope({"id": "s1"}))

    @pytest.mark.asyncio
    async def test_set_status_keeps_version(self, store):
        await store.put(EXPOSURES, Envelope(exposure_doc("e1", 0)))
        async with store.transaction([EXPOSURES]) as txn:
            assert await txn.set_status(EXPOSURES, "e1", SyncStatus.CONFLICT) is True

        envelope = await store.get(EXPOSURES, "e1")
        assert envelope.sync_status is SyncStatus.CONFLICT
        assert envelope.version == 1


class TestMarkSynced:
    """Tests for the version-guarded sync acknowledgement."""

    @pytest.mark.asyncio
    async def test_marks_records_with_unchanged_version(self, store):
        a = await store.put(EXPOSURES, Envelope(exposure_doc("a", 0)))
        b = await store.put(EXPOSURES, Envelope(exposure_doc("b", 1)))

        flipped = await store.mark_synced(EXPOSURES, {a.id: a.version, b.id: b.version})

        assert sorted(flipped) == ["a", "b"]
        assert await store.count(EXPOSURES, SyncStatus.SYNCED) == 2

    @pytest.mark.asyncio
    async def test_edited_record_stays_pending(self, store):
        a = await store.put(EXPOSURES, Envelope(exposure_doc("a", 0)))
        await store.update(EXPOSURES, "a", {"suds_current": 2})

        flipped = await store.mark_synced(EXPOSURES, {a.id: a.version})

        assert flipped == []
        envelope = await store.get(EXPOSURES, "a")
        assert envelope.sync_status is SyncStatus.PENDING
        assert envelope.data["suds_current"] == 2

    @pytest.mark.asyncio
    async def test_deleted_record_is_skipped(self, store):
        a = await store.put(EXPOSURES, Envelope(exposure_doc("a", 0)))
        await store.delete(EXPOSURES, "a")
        assert await store.mark_synced(EXPOSURES, {a.id: a.version}) == []
