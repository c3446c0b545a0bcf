"""
Core types for anchor storage.

Entity dataclasses persisted by the local store and shipped by the sync
engine, plus the Envelope that carries local-only sync metadata alongside
each record's business data.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .timestamps import parse_timestamp, to_iso, utc_now

# =============================================================================
# Enums
# =============================================================================


class SyncStatus(Enum):
    """Local sync state of a record."""

    SYNCED = "synced"  # Local state matches remote as of last confirmed round-trip
    PENDING = "pending"  # Local edits not yet confirmed on remote
    CONFLICT = "conflict"  # Local edit is newer than a diverging remote write


class SessionOutcome(Enum):
    """How an exposure session ended."""

    COMPLETED = "completed"
    PARTIAL = "partial"
    ABANDONED = "abandoned"


class CheckInOutcome(Enum):
    """Whether a feared outcome actually happened."""

    YES = "yes"
    NO = "no"
    PARTIALLY = "partially"
    UNSURE = "unsure"


# =============================================================================
# Table names
# =============================================================================

EXPOSURES = "exposures"
SESSIONS = "sessions"
STREAKS = "streaks"
SETTINGS = "settings"
OUTCOME_CHECK_INS = "outcome_check_ins"
REASSURANCE_URGES = "reassurance_urges"

SYNCED_TABLES: tuple[str, ...] = (
    EXPOSURES,
    SESSIONS,
    STREAKS,
    OUTCOME_CHECK_INS,
    REASSURANCE_URGES,
    SETTINGS,
)


def new_id() -> str:
    """Mint a globally unique record id."""
    return str(uuid.uuid4())


def _iso_or_none(value: datetime | None) -> str | None:
    return to_iso(value) if value is not None else None


def _required_ts(data: dict[str, Any], key: str) -> datetime:
    return parse_timestamp(data.get(key)) or utc_now()


# =============================================================================
# Envelope
# =============================================================================


@dataclass
class Envelope:
    """A stored record: business data plus local-only sync metadata.

    ``version`` is a per-record counter bumped by every local write. The
    sync engine remembers the version it pushed and only flips the record
    to synced if nothing changed in between.
    """

    data: dict[str, Any]
    sync_status: SyncStatus = SyncStatus.PENDING
    version: int = 0

    @property
    def id(self) -> str:
        return self.data["id"]

    @property
    def updated_at(self) -> datetime | None:
        return parse_timestamp(self.data.get("updated_at"))


# =============================================================================
# Entities
# =============================================================================


@dataclass
class Exposure:
    """A user-defined item on the fear hierarchy ("ladder")."""

    trigger_description: str
    suds_initial: int
    suds_current: int
    order_index: int = 0
    completed_count: int = 0
    feared_outcome: str | None = None
    feared_probability: int | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trigger_description": self.trigger_description,
            "suds_initial": self.suds_initial,
            "suds_current": self.suds_current,
            "order_index": self.order_index,
            "completed_count": self.completed_count,
            "feared_outcome": self.feared_outcome,
            "feared_probability": self.feared_probability,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Exposure:
        return cls(
            id=data["id"],
            trigger_description=data.get("trigger_description", ""),
            suds_initial=data.get("suds_initial", 0),
            suds_current=data.get("suds_current", data.get("suds_initial", 0)),
            order_index=data.get("order_index", 0),
            completed_count=data.get("completed_count", 0),
            feared_outcome=data.get("feared_outcome"),
            feared_probability=data.get("feared_probability"),
            created_at=_required_ts(data, "created_at"),
            updated_at=_required_ts(data, "updated_at"),
        )


@dataclass
class SudsEntry:
    """One timestamped distress reading taken during an exposure."""

    timestamp: datetime
    value: int

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": to_iso(self.timestamp), "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SudsEntry:
        return cls(timestamp=_required_ts(data, "timestamp"), value=data["value"])


@dataclass
class Session:
    """One attempt at an exposure. Immutable once written."""

    exposure_id: str
    started_at: datetime
    suds_start: int
    outcome: SessionOutcome
    completed_at: datetime | None = None
    duration_seconds: int | None = None
    suds_end: int | None = None
    suds_log: list[SudsEntry] = field(default_factory=list)
    reflection: str | None = None
    audio_blob: str | None = None  # base64 encoded voice memo
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "exposure_id": self.exposure_id,
            "started_at": to_iso(self.started_at),
            "completed_at": _iso_or_none(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "suds_start": self.suds_start,
            "suds_end": self.suds_end,
            "suds_log": [entry.to_dict() for entry in self.suds_log],
            "reflection": self.reflection,
            "audio_blob": self.audio_blob,
            "outcome": self.outcome.value,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            exposure_id=data["exposure_id"],
            started_at=_required_ts(data, "started_at"),
            completed_at=parse_timestamp(data.get("completed_at")),
            duration_seconds=data.get("duration_seconds"),
            suds_start=data.get("suds_start", 0),
            suds_end=data.get("suds_end"),
            suds_log=[SudsEntry.from_dict(e) for e in data.get("suds_log") or []],
            reflection=data.get("reflection"),
            audio_blob=data.get("audio_blob"),
            outcome=SessionOutcome(data.get("outcome", SessionOutcome.PARTIAL.value)),
            created_at=_required_ts(data, "created_at"),
            updated_at=_required_ts(data, "updated_at"),
        )


@dataclass
class Streak:
    """Consecutive-day activity counter. At most one is meaningfully used."""

    current_streak: int
    longest_streak: int
    last_activity_date: datetime
    id: str = field(default_factory=new_id)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_activity_date": to_iso(self.last_activity_date),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Streak:
        return cls(
            id=data["id"],
            current_streak=data.get("current_streak", 0),
            longest_streak=data.get("longest_streak", 0),
            last_activity_date=_required_ts(data, "last_activity_date"),
            updated_at=_required_ts(data, "updated_at"),
        )


@dataclass
class OutcomeCheckIn:
    """Deferred follow-up asking whether a predicted feared outcome happened."""

    session_id: str
    exposure_id: str
    feared_outcome: str
    predicted_probability: int
    scheduled_at: datetime
    outcome_occurred: CheckInOutcome | None = None
    notes: str | None = None
    completed_at: datetime | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_answered(self) -> bool:
        return self.outcome_occurred is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "exposure_id": self.exposure_id,
            "feared_outcome": self.feared_outcome,
            "predicted_probability": self.predicted_probability,
            "scheduled_at": to_iso(self.scheduled_at),
            "outcome_occurred": self.outcome_occurred.value if self.outcome_occurred else None,
            "notes": self.notes,
            "completed_at": _iso_or_none(self.completed_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OutcomeCheckIn:
        occurred = data.get("outcome_occurred")
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            exposure_id=data["exposure_id"],
            feared_outcome=data.get("feared_outcome", ""),
            predicted_probability=data.get("predicted_probability", 0),
            scheduled_at=_required_ts(data, "scheduled_at"),
            outcome_occurred=CheckInOutcome(occurred) if occurred else None,
            notes=data.get("notes"),
            completed_at=parse_timestamp(data.get("completed_at")),
            created_at=_required_ts(data, "created_at"),
            updated_at=_required_ts(data, "updated_at"),
        )


@dataclass
class ReassuranceUrge:
    """An urge to seek reassurance, deposited and delayed."""

    urge_description: str
    urgency: int
    wait_duration: int  # seconds
    completed_wait: bool = False
    coping_tools_used: list[str] = field(default_factory=list)
    gave_in_at: datetime | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "urge_description": self.urge_description,
            "urgency": self.urgency,
            "wait_duration": self.wait_duration,
            "completed_wait": self.completed_wait,
            "coping_tools_used": list(self.coping_tools_used),
            "gave_in_at": _iso_or_none(self.gave_in_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReassuranceUrge:
        return cls(
            id=data["id"],
            urge_description=data.get("urge_description", ""),
            urgency=data.get("urgency", 0),
            wait_duration=data.get("wait_duration", 0),
            completed_wait=bool(data.get("completed_wait", False)),
            coping_tools_used=list(data.get("coping_tools_used") or []),
            gave_in_at=parse_timestamp(data.get("gave_in_at")),
            created_at=_required_ts(data, "created_at"),
            updated_at=_required_ts(data, "updated_at"),
        )


@dataclass
class Settings:
    """Singleton user settings."""

    has_completed_onboarding: bool = False
    id: str = field(default_factory=new_id)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "has_completed_onboarding": self.has_completed_onboarding,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        return cls(
            id=data["id"],
            has_completed_onboarding=bool(data.get("has_completed_onboarding", False)),
            updated_at=_required_ts(data, "updated_at"),
        )
