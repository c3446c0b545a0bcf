"""Tests for JSON and CSV export."""

import csv
import json
from datetime import UTC, datetime, timedelta, timezone

import pytest

from anchor_storage.export import (
    CSV_HEADERS,
    build_export,
    default_filename,
    render_csv,
    session_row,
    write_csv_export,
    write_json_export,
)
from anchor_storage.models import Session, SessionOutcome


def make_session(**overrides) -> Session:
    fields = {
        "exposure_id": "e1",
        "started_at": datetime(2024, 3, 1, 23, 30, tzinfo=UTC),
        "suds_start": 7,
        "outcome": SessionOutcome.COMPLETED,
        "duration_seconds": 659,
        "suds_end": 3,
        "reflection": "calmer, then fine",
    }
    fields.update(overrides)
    return Session(**fields)


class TestRows:
    def test_session_row(self):
        assert session_row(make_session(), UTC) == [
            "2024-03-01",
            "10",
            "7",
            "3",
            "4",
            "completed",
            "calmer, then fine",
        ]

    def test_date_uses_local_timezone(self):
        plus_two = timezone(timedelta(hours=2))
        assert session_row(make_session(), plus_two)[0] == "2024-03-02"

    def test_missing_end_rating_leaves_blanks(self):
        row = session_row(
            make_session(suds_end=None, duration_seconds=None, reflection=None), UTC
        )
        assert row[1:5] == ["0", "7", "", ""]
        assert row[6] == ""

    def test_render_csv_quotes_fields(self):
        text = render_csv([make_session()], UTC)

        rows = list(csv.reader(text.splitlines()))
        assert tuple(rows[0]) == CSV_HEADERS
        assert rows[1][6] == "calmer, then fine"
        assert '"calmer, then fine"' in text

    def test_default_filename(self):
        now = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
        assert default_filename("json", now) == "anchor-export-2024-03-01.json"
        assert default_filename("csv", now) == "anchor-sessions-2024-03-01.csv"


class TestExport:
    @pytest.mark.asyncio
    async def test_build_export(self, repository, clock):
        first = await repository.create_exposure("Touch door handle", 7)
        await repository.create_exposure("Use public restroom", 9)
        await repository.create_session(first.id, clock.now, 7, SessionOutcome.PARTIAL)
        await repository.create_session(
            first.id, clock.now + timedelta(days=1), 6, SessionOutcome.COMPLETED
        )

        data = await build_export(repository, now=clock.now)

        assert data["export_date"] == "2024-03-01T12:00:00+00:00"
        assert [e["trigger_description"] for e in data["exposures"]] == [
            "Touch door handle",
            "Use public restroom",
        ]
        assert [s["outcome"] for s in data["sessions"]] == ["completed", "partial"]
        assert all("sync_status" not in s for s in data["sessions"])

    @pytest.mark.asyncio
    async def test_empty_store(self, repository):
        data = await build_export(repository)
        assert data["exposures"] == []
        assert data["sessions"] == []

    @pytest.mark.asyncio
    async def test_write_json(self, repository, tmp_path):
        await repository.create_exposure("Touch door handle", 7)

        path = await write_json_export(repository, tmp_path / "out" / "export.json")

        data = json.loads(path.read_text())
        assert len(data["exposures"]) == 1

    @pytest.mark.asyncio
    async def test_write_csv(self, repository, clock, tmp_path):
        exposure = await repository.create_exposure("Touch door handle", 7)
        await repository.create_session(
            exposure.id,
            clock.now,
            7,
            SessionOutcome.COMPLETED,
            duration_seconds=600,
            suds_end=2,
        )

        path = await write_csv_export(repository, tmp_path / "sessions.csv", tz=UTC)

        lines = path.read_text().splitlines()
        assert lines == [",".join(CSV_HEADERS), "2024-03-01,10,7,2,5,completed,"]
