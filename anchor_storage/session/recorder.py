"""
Persistence side effects for finished sessions.

The state machine is a pure in-memory producer; once it reaches
``complete`` (or a mid-exposure cancel leaves an abandoned snapshot) the
recorder writes the resulting records through the repository, where they
are marked pending and picked up by the sync engine.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from ..exceptions import InvalidSessionStateError
from ..local.repository import AnchorRepository
from ..models import Session, SessionOutcome
from ..timestamps import utc_now
from .machine import SessionContext, SessionMachine, SessionState

logger = logging.getLogger(__name__)

CHECK_IN_DELAY = timedelta(hours=48)


class SessionRecorder:
    """Writes Session, OutcomeCheckIn, Exposure and Streak updates."""

    def __init__(
        self,
        repository: AnchorRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self._clock = clock

    async def record_completion(
        self,
        machine: SessionMachine,
        suds_end: int | None = None,
        audio_blob: str | None = None,
    ) -> Session:
        """Persist a session that reached ``complete``.

        Args:
            machine: Machine in the complete state
            suds_end: Final distress rating (defaults to the last logged reading)
            audio_blob: Optional base64 voice memo

        Returns:
            The stored Session. The machine is reset to idle, so the same
            attempt cannot be recorded twice.

        Raises:
            InvalidSessionStateError: If the machine has not completed
        """
        if machine.state is not SessionState.COMPLETE:
            raise InvalidSessionStateError(machine.state.value, SessionState.COMPLETE.value)

        ctx = machine.context
        exposure = ctx.exposure
        if exposure is None:
            raise InvalidSessionStateError(machine.state.value, "complete with an exposure")

        outcome = SessionOutcome.COMPLETED if ctx.reached_target else SessionOutcome.PARTIAL
        session = await self._write_session(ctx, outcome, suds_end, audio_blob)

        if exposure.feared_outcome and exposure.feared_probability is not None:
            await self.repository.create_outcome_check_in(
                session_id=session.id,
                exposure_id=exposure.id,
                feared_outcome=exposure.feared_outcome,
                predicted_probability=exposure.feared_probability,
                scheduled_at=self._clock() + CHECK_IN_DELAY,
            )

        current = await self.repository.get_exposure(exposure.id)
        completed_count = (current or exposure).completed_count + 1
        fields: dict[str, int] = {"completed_count": completed_count}
        if session.suds_end is not None:
            fields["suds_current"] = session.suds_end
        await self.repository.update_exposure(exposure.id, **fields)

        await self.repository.increment_streak(self._clock())
        machine.reset()

        logger.info(
            "Session recorded",
            extra={
                "session_id": session.id,
                "exposure_id": exposure.id,
                "outcome": outcome.value,
                "duration_seconds": session.duration_seconds,
            },
        )
        return session

    async def record_abandoned(
        self,
        machine: SessionMachine,
        suds_end: int | None = None,
        audio_blob: str | None = None,
    ) -> Session | None:
        """Persist an exposure cancelled mid-delay as an abandoned session.

        Exposure and streak are left untouched. Returns None when nothing
        was abandoned (e.g. the cancel came before the delay started).
        """
        ctx = machine.abandoned
        if ctx is None or ctx.exposure is None:
            return None

        session = await self._write_session(ctx, SessionOutcome.ABANDONED, suds_end, audio_blob)
        machine.abandoned = None
        logger.info(
            "Abandoned session recorded",
            extra={"session_id": session.id, "exposure_id": ctx.exposure.id},
        )
        return session

    async def _write_session(
        self,
        ctx: SessionContext,
        outcome: SessionOutcome,
        suds_end: int | None,
        audio_blob: str | None,
    ) -> Session:
        exposure = ctx.exposure
        return await self.repository.create_session(
            exposure_id=exposure.id,
            started_at=ctx.started_at or self._clock(),
            suds_start=exposure.suds_current,
            outcome=outcome,
            completed_at=self._clock(),
            duration_seconds=ctx.elapsed_time,
            suds_end=suds_end if suds_end is not None else ctx.last_suds,
            suds_log=ctx.suds_log,
            reflection=ctx.reflection,
            audio_blob=audio_blob,
        )
