"""
Named operations over the local store.

This is the only surface the UI mutates data through. Every create mints a
fresh id, every write stamps ``updated_at`` and marks the record pending so
the sync engine ships it on its next push.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import is_dataclass
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Any

from ..exceptions import RecordNotFoundError, ValidationError
from ..models import (
    EXPOSURES,
    OUTCOME_CHECK_INS,
    REASSURANCE_URGES,
    SESSIONS,
    SETTINGS,
    STREAKS,
    CheckInOutcome,
    Envelope,
    Exposure,
    OutcomeCheckIn,
    ReassuranceUrge,
    Session,
    SessionOutcome,
    Settings,
    Streak,
    SudsEntry,
    SyncStatus,
)
from ..timestamps import to_iso, utc_now
from .store import PENDING_DELETES, LocalStore

logger = logging.getLogger(__name__)

# Adaptive reassurance wait, in seconds
BASE_WAIT_SECONDS = 900
WAIT_STEP_SECONDS = 300
MIN_WAIT_SECONDS = 300
MAX_WAIT_SECONDS = 2700
ADAPTIVE_WINDOW = 3


def adaptive_wait_seconds(recent_urges: Sequence[ReassuranceUrge]) -> int:
    """Compute the next reassurance wait from the most recent urges.

    Args:
        recent_urges: Prior urges, newest first. Only the first three count.
    """
    window = list(recent_urges[:ADAPTIVE_WINDOW])
    wait = BASE_WAIT_SECONDS

    if len(window) >= ADAPTIVE_WINDOW and all(u.completed_wait for u in window):
        wait += WAIT_STEP_SECONDS
    if window and not window[0].completed_wait:
        wait = max(MIN_WAIT_SECONDS, wait - WAIT_STEP_SECONDS)

    return max(MIN_WAIT_SECONDS, min(MAX_WAIT_SECONDS, wait))


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list | tuple):
        return [_serialize(v) for v in value]
    return value


def _check_range(field: str, value: int | None, low: int, high: int) -> None:
    if value is not None and not low <= value <= high:
        raise ValidationError(field, f"must be between {low} and {high}", str(value))


class AnchorRepository:
    """
    UI-facing operations for every entity kind.

    Args:
        store: Initialized local store
        clock: Returns the current time; injectable for tests
        tz: Timezone used for the daily streak boundary (system local if None)
    """

    def __init__(
        self,
        store: LocalStore,
        clock: Callable[[], datetime] = utc_now,
        tz: tzinfo | None = None,
    ):
        self.store = store
        self._clock = clock
        self._tz = tz

    # =========================================================================
    # Generic helpers
    # =========================================================================

    async def _create(self, table: str, data: dict[str, Any]) -> dict[str, Any]:
        stored = await self.store.put(table, Envelope(data=data, sync_status=SyncStatus.PENDING))
        logger.debug("Record created", extra={"table": table, "record_id": stored.id})
        return stored.data

    async def _update(self, table: str, record_id: str, fields: dict[str, Any]) -> Envelope | None:
        fields = {k: _serialize(v) for k, v in fields.items() if k != "id"}
        fields["updated_at"] = to_iso(self._clock())
        return await self.store.update(table, record_id, fields, sync_status=SyncStatus.PENDING)

    async def _delete(self, table: str, record_id: str) -> bool:
        """Delete a record and queue the deletion for the remote store."""
        async with self.store.transaction([table, PENDING_DELETES]) as txn:
            deleted = await txn.delete(table, record_id)
            if deleted:
                await txn.put(
                    PENDING_DELETES,
                    Envelope(
                        data={
                            "id": f"{table}:{record_id}",
                            "table_name": table,
                            "record_id": record_id,
                            "deleted_at": to_iso(self._clock()),
                        },
                        sync_status=SyncStatus.PENDING,
                    ),
                )
        return deleted

    def _local_date(self, value: datetime):
        return value.astimezone(self._tz).date()

    # =========================================================================
    # Exposures
    # =========================================================================

    async def create_exposure(
        self,
        trigger_description: str,
        suds_initial: int,
        suds_current: int | None = None,
        order_index: int | None = None,
        feared_outcome: str | None = None,
        feared_probability: int | None = None,
    ) -> Exposure:
        """Add an exposure to the ladder (at the end unless order_index is given)."""
        if not trigger_description.strip():
            raise ValidationError("trigger_description", "must not be empty")
        _check_range("suds_initial", suds_initial, 0, 10)
        _check_range("suds_current", suds_current, 0, 10)
        _check_range("feared_probability", feared_probability, 0, 100)

        if order_index is None:
            order_index = await self.store.count(EXPOSURES)

        now = self._clock()
        exposure = Exposure(
            trigger_description=trigger_description.strip(),
            suds_initial=suds_initial,
            suds_current=suds_initial if suds_current is None else suds_current,
            order_index=order_index,
            feared_outcome=feared_outcome or None,
            feared_probability=feared_probability if feared_outcome else None,
            created_at=now,
            updated_at=now,
        )
        return Exposure.from_dict(await self._create(EXPOSURES, exposure.to_dict()))

    async def get_exposure(self, exposure_id: str) -> Exposure | None:
        envelope = await self.store.get(EXPOSURES, exposure_id)
        return Exposure.from_dict(envelope.data) if envelope else None

    async def get_exposures(self) -> list[Exposure]:
        """All exposures in ladder order."""
        envelopes = await self.store.query(EXPOSURES, index="order_index")
        return [Exposure.from_dict(e.data) for e in envelopes]

    async def update_exposure(self, exposure_id: str, **fields: Any) -> Exposure | None:
        _check_range("suds_current", fields.get("suds_current"), 0, 10)
        _check_range("feared_probability", fields.get("feared_probability"), 0, 100)
        envelope = await self._update(EXPOSURES, exposure_id, fields)
        return Exposure.from_dict(envelope.data) if envelope else None

    async def delete_exposure(self, exposure_id: str) -> bool:
        return await self._delete(EXPOSURES, exposure_id)

    async def reorder_exposures(self, exposure_ids: Sequence[str]) -> None:
        """Rewrite order_index to match the given order.

        All exposures are rewritten in one transaction; if any id is
        unknown nothing is changed.
        """
        now = to_iso(self._clock())
        async with self.store.transaction([EXPOSURES]) as txn:
            for position, exposure_id in enumerate(exposure_ids):
                updated = await txn.update(
                    EXPOSURES,
                    exposure_id,
                    {"order_index": position, "updated_at": now},
                    sync_status=SyncStatus.PENDING,
                )
                if updated is None:
                    raise RecordNotFoundError(EXPOSURES, exposure_id)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self,
        exposure_id: str,
        started_at: datetime,
        suds_start: int,
        outcome: SessionOutcome,
        completed_at: datetime | None = None,
        duration_seconds: int | None = None,
        suds_end: int | None = None,
        suds_log: Sequence[SudsEntry] = (),
        reflection: str | None = None,
        audio_blob: str | None = None,
    ) -> Session:
        now = self._clock()
        session = Session(
            exposure_id=exposure_id,
            started_at=started_at,
            suds_start=suds_start,
            outcome=outcome,
            completed_at=completed_at,
            duration_seconds=duration_seconds,
            suds_end=suds_end,
            suds_log=list(suds_log),
            reflection=reflection,
            audio_blob=audio_blob,
            created_at=now,
            updated_at=now,
        )
        return Session.from_dict(await self._create(SESSIONS, session.to_dict()))

    async def get_session(self, session_id: str) -> Session | None:
        envelope = await self.store.get(SESSIONS, session_id)
        return Session.from_dict(envelope.data) if envelope else None

    async def get_sessions_by_exposure(self, exposure_id: str) -> list[Session]:
        envelopes = await self.store.query(SESSIONS, index="exposure_id", equals=exposure_id)
        sessions = [Session.from_dict(e.data) for e in envelopes]
        return sorted(sessions, key=lambda s: s.started_at)

    async def get_all_sessions(self) -> list[Session]:
        """All sessions, newest first."""
        envelopes = await self.store.query(SESSIONS, index="started_at", reverse=True)
        return [Session.from_dict(e.data) for e in envelopes]

    async def update_session(self, session_id: str, **fields: Any) -> Session | None:
        envelope = await self._update(SESSIONS, session_id, fields)
        return Session.from_dict(envelope.data) if envelope else None

    # =========================================================================
    # Streak
    # =========================================================================

    async def get_streak(self) -> Streak | None:
        """The streak record with the most recent activity, if any."""
        envelopes = await self.store.query(
            STREAKS, index="last_activity_date", reverse=True, limit=1
        )
        return Streak.from_dict(envelopes[0].data) if envelopes else None

    async def increment_streak(self, now: datetime | None = None) -> Streak:
        """Record activity for today.

        Same calendar day as the last activity leaves the streak unchanged,
        the next day extends it, anything later starts over at 1.
        """
        now = now or self._clock()
        streak = await self.get_streak()

        if streak is None:
            return await self._write_streak(None, 1, now)

        days = (self._local_date(now) - self._local_date(streak.last_activity_date)).days
        if days <= 0:
            return streak
        if days == 1:
            return await self._write_streak(streak, streak.current_streak + 1, now)
        return await self._write_streak(streak, 1, now)

    async def _write_streak(self, existing: Streak | None, current: int, now: datetime) -> Streak:
        if existing is None:
            streak = Streak(
                current_streak=current,
                longest_streak=current,
                last_activity_date=now,
                updated_at=now,
            )
            return Streak.from_dict(await self._create(STREAKS, streak.to_dict()))

        envelope = await self._update(
            STREAKS,
            existing.id,
            {
                "current_streak": current,
                "longest_streak": max(existing.longest_streak, current),
                "last_activity_date": now,
            },
        )
        if envelope is None:
            raise RecordNotFoundError(STREAKS, existing.id)
        return Streak.from_dict(envelope.data)

    # =========================================================================
    # Settings
    # =========================================================================

    async def _get_settings(self) -> Settings | None:
        envelopes = await self.store.query(SETTINGS, limit=1)
        return Settings.from_dict(envelopes[0].data) if envelopes else None

    async def get_onboarding_status(self) -> bool:
        settings = await self._get_settings()
        return settings.has_completed_onboarding if settings else False

    async def set_onboarding_complete(self) -> Settings:
        settings = await self._get_settings()
        if settings is None:
            created = Settings(has_completed_onboarding=True, updated_at=self._clock())
            return Settings.from_dict(await self._create(SETTINGS, created.to_dict()))

        envelope = await self._update(SETTINGS, settings.id, {"has_completed_onboarding": True})
        if envelope is None:
            raise RecordNotFoundError(SETTINGS, settings.id)
        return Settings.from_dict(envelope.data)

    # =========================================================================
    # Outcome check-ins
    # =========================================================================

    async def create_outcome_check_in(
        self,
        session_id: str,
        exposure_id: str,
        feared_outcome: str,
        predicted_probability: int,
        scheduled_at: datetime,
    ) -> OutcomeCheckIn:
        _check_range("predicted_probability", predicted_probability, 0, 100)
        now = self._clock()
        check_in = OutcomeCheckIn(
            session_id=session_id,
            exposure_id=exposure_id,
            feared_outcome=feared_outcome,
            predicted_probability=predicted_probability,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
        )
        return OutcomeCheckIn.from_dict(await self._create(OUTCOME_CHECK_INS, check_in.to_dict()))

    async def get_pending_check_ins(self, now: datetime | None = None) -> list[OutcomeCheckIn]:
        """Unanswered check-ins that are due, earliest first."""
        now = now or self._clock()
        envelopes = await self.store.query(OUTCOME_CHECK_INS, index="scheduled_at", upper=now)
        check_ins = [OutcomeCheckIn.from_dict(e.data) for e in envelopes]
        return [c for c in check_ins if not c.is_answered]

    async def get_check_ins_for_session(self, session_id: str) -> list[OutcomeCheckIn]:
        envelopes = await self.store.query(OUTCOME_CHECK_INS, index="session_id", equals=session_id)
        return [OutcomeCheckIn.from_dict(e.data) for e in envelopes]

    async def complete_check_in(
        self,
        check_in_id: str,
        outcome: CheckInOutcome | str,
        notes: str | None = None,
    ) -> OutcomeCheckIn | None:
        """Record whether the feared outcome happened."""
        outcome = CheckInOutcome(outcome)
        envelope = await self._update(
            OUTCOME_CHECK_INS,
            check_in_id,
            {
                "outcome_occurred": outcome,
                "notes": notes.strip() if notes and notes.strip() else None,
                "completed_at": self._clock(),
            },
        )
        return OutcomeCheckIn.from_dict(envelope.data) if envelope else None

    # =========================================================================
    # Reassurance urges
    # =========================================================================

    async def create_reassurance_urge(
        self,
        urge_description: str,
        urgency: int,
        wait_duration: int | None = None,
        coping_tools_used: Sequence[str] = (),
    ) -> ReassuranceUrge:
        """Deposit an urge. The wait defaults to the adaptive wait time."""
        if not urge_description.strip():
            raise ValidationError("urge_description", "must not be empty")
        _check_range("urgency", urgency, 1, 10)
        if wait_duration is None:
            wait_duration = await self.calculate_adaptive_wait_time()

        now = self._clock()
        urge = ReassuranceUrge(
            urge_description=urge_description.strip(),
            urgency=urgency,
            wait_duration=wait_duration,
            coping_tools_used=list(coping_tools_used),
            created_at=now,
            updated_at=now,
        )
        return ReassuranceUrge.from_dict(await self._create(REASSURANCE_URGES, urge.to_dict()))

    async def get_recent_reassurance_urges(self, limit: int = 10) -> list[ReassuranceUrge]:
        """Most recent urges, newest first."""
        envelopes = await self.store.query(
            REASSURANCE_URGES, index="created_at", reverse=True, limit=limit
        )
        return [ReassuranceUrge.from_dict(e.data) for e in envelopes]

    async def get_reassurance_success_rate(self) -> int:
        """Percentage of resolved urges where the full wait was completed."""
        envelopes = await self.store.query(REASSURANCE_URGES)
        urges = [ReassuranceUrge.from_dict(e.data) for e in envelopes]
        resolved = [u for u in urges if u.completed_wait or u.gave_in_at is not None]
        if not resolved:
            return 0
        resisted = sum(1 for u in resolved if u.completed_wait)
        return round(resisted / len(resolved) * 100)

    async def update_reassurance_urge(self, urge_id: str, **fields: Any) -> ReassuranceUrge | None:
        envelope = await self._update(REASSURANCE_URGES, urge_id, fields)
        return ReassuranceUrge.from_dict(envelope.data) if envelope else None

    async def complete_urge_wait(
        self, urge_id: str, coping_tools_used: Sequence[str] = ()
    ) -> ReassuranceUrge | None:
        """The user sat through the whole wait."""
        return await self.update_reassurance_urge(
            urge_id, completed_wait=True, coping_tools_used=list(coping_tools_used)
        )

    async def give_in_to_urge(
        self, urge_id: str, coping_tools_used: Sequence[str] = ()
    ) -> ReassuranceUrge | None:
        """The user sought reassurance before the wait ended."""
        return await self.update_reassurance_urge(
            urge_id,
            completed_wait=False,
            gave_in_at=self._clock(),
            coping_tools_used=list(coping_tools_used),
        )

    async def calculate_adaptive_wait_time(self) -> int:
        recent = await self.get_recent_reassurance_urges(ADAPTIVE_WINDOW)
        return adaptive_wait_seconds(recent)

    # =========================================================================
    # Analytics
    # =========================================================================

    async def get_weekly_session_count(self, now: datetime | None = None) -> int:
        """Sessions started in the last seven days."""
        now = now or self._clock()
        envelopes = await self.store.query(
            SESSIONS, index="started_at", lower=now - timedelta(days=7)
        )
        return len(envelopes)

    async def get_average_suds_reduction(self) -> float:
        """Mean drop from start to end SUDS over completed sessions."""
        sessions = [
            s
            for s in await self.get_all_sessions()
            if s.outcome == SessionOutcome.COMPLETED and s.suds_end is not None
        ]
        if not sessions:
            return 0.0
        total = sum(s.suds_start - s.suds_end for s in sessions)
        return total / len(sessions)
