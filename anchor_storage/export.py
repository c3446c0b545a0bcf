"""
Read-only export of the local store.

Snapshots exposures and sessions as they are at call time, either as a
JSON document or as a per-session CSV sheet.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from .local.repository import AnchorRepository
from .models import Session
from .timestamps import to_iso, utc_now

logger = logging.getLogger(__name__)

CSV_HEADERS = (
    "Session Date",
    "Duration (min)",
    "SUDS Start",
    "SUDS End",
    "SUDS Reduction",
    "Outcome",
    "Reflection",
)


def default_filename(kind: str, now: datetime | None = None) -> str:
    """e.g. ``anchor-export-2024-03-01.json`` or ``anchor-sessions-2024-03-01.csv``."""
    day = (now or utc_now()).date().isoformat()
    if kind == "csv":
        return f"anchor-sessions-{day}.csv"
    return f"anchor-export-{day}.json"


async def build_export(repository: AnchorRepository, now: datetime | None = None) -> dict[str, Any]:
    """Exposures (ladder order) and sessions (newest first) as plain dicts."""
    exposures = await repository.get_exposures()
    sessions = await repository.get_all_sessions()
    return {
        "export_date": to_iso(now or utc_now()),
        "exposures": [e.to_dict() for e in exposures],
        "sessions": [s.to_dict() for s in sessions],
    }


def session_row(session: Session, tz: tzinfo | None = None) -> list[str]:
    """One CSV row. Reduction is blank when no end rating was recorded."""
    suds_end = session.suds_end
    return [
        session.started_at.astimezone(tz).date().isoformat(),
        str((session.duration_seconds or 0) // 60),
        str(session.suds_start),
        "" if suds_end is None else str(suds_end),
        "" if suds_end is None else str(session.suds_start - suds_end),
        session.outcome.value,
        session.reflection or "",
    ]


def render_csv(sessions: list[Session], tz: tzinfo | None = None) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for session in sessions:
        writer.writerow(session_row(session, tz))
    return buffer.getvalue()


async def _write_text(path: Path, content: str) -> None:
    if path.parent != Path("."):
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8", newline="") as f:
        await f.write(content)


async def write_json_export(repository: AnchorRepository, path: str | Path) -> Path:
    """Write the JSON snapshot to ``path``."""
    path = Path(path)
    data = await build_export(repository)
    await _write_text(path, json.dumps(data, indent=2))
    logger.info(
        "JSON export written",
        extra={
            "path": str(path),
            "exposures": len(data["exposures"]),
            "sessions": len(data["sessions"]),
        },
    )
    return path


async def write_csv_export(
    repository: AnchorRepository,
    path: str | Path,
    tz: tzinfo | None = None,
) -> Path:
    """Write one CSV row per session, newest first, to ``path``."""
    path = Path(path)
    sessions = await repository.get_all_sessions()
    await _write_text(path, render_csv(sessions, tz))
    logger.info("CSV export written", extra={"path": str(path), "sessions": len(sessions)})
    return path
