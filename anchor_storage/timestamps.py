"""
Timestamp helpers shared by the models, the local store and the sync engine.

Locally every timestamp is stored as an ISO-8601 string in UTC. Documents
pulled from the remote store may carry other encodings (epoch seconds or
milliseconds, ``{"seconds": .., "nanoseconds": ..}`` objects written by
other clients, ``Z``-suffixed or naive strings), so pulled data is
normalized before it is written locally.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

# Keys whose values are timestamps, wherever they appear in a document.
TIMESTAMP_FIELDS: frozenset[str] = frozenset(
    {
        "created_at",
        "updated_at",
        "started_at",
        "completed_at",
        "scheduled_at",
        "last_activity_date",
        "gave_in_at",
        "timestamp",
    }
)

# Epoch values above this are treated as milliseconds.
_EPOCH_MS_THRESHOLD = 100_000_000_000


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as an ISO-8601 UTC string.

    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse any supported timestamp encoding into an aware UTC datetime.

    Returns None for None and for values that are not recognisable
    timestamps.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        seconds = value / 1000 if abs(value) >= _EPOCH_MS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)
    if isinstance(value, dict) and "seconds" in value:
        seconds = value.get("seconds")
        nanos = value.get("nanoseconds", 0) or 0
        if isinstance(seconds, int | float) and isinstance(nanos, int | float):
            return datetime.fromtimestamp(seconds + nanos / 1_000_000_000, tz=UTC)
    return None


def normalize_timestamps(value: Any, key: str | None = None) -> Any:
    """Recursively rewrite timestamp values into the local representation.

    Walks dicts and lists (suds_log nests timestamps inside a list of
    dicts). Values under a timestamp key that cannot be parsed are left
    untouched, so malformed documents are written partially normalized
    rather than rejected.
    """
    if key in TIMESTAMP_FIELDS:
        parsed = parse_timestamp(value)
        if parsed is not None:
            return to_iso(parsed)
        if not isinstance(value, dict | list):
            return value

    if isinstance(value, dict):
        return {k: normalize_timestamps(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [normalize_timestamps(item) for item in value]
    return value
