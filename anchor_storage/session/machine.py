"""
Exposure Session State Machine

Drives one therapeutic exercise from trigger through the timed exposure
to reflection:

    idle -> triggered -> delay -> reflection -> complete

``delay`` self-loops on timer ticks, distress readings and extensions.
``complete`` is final. The machine owns no timers; the caller sends
TimerTick once per second and performs the persistence side effects once
``complete`` is reached (see ``SessionRecorder``).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from ..models import Exposure, SudsEntry
from ..timestamps import utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMER_DURATION = 600  # seconds
DEFAULT_SUDS = 5  # seeded when the exposure has no current rating


class SessionState(Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"
    DELAY = "delay"
    REFLECTION = "reflection"
    COMPLETE = "complete"


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class StartSession:
    exposure: Exposure


@dataclass(frozen=True)
class BeginDelay:
    pass


@dataclass(frozen=True)
class TimerTick:
    pass


@dataclass(frozen=True)
class LogSuds:
    value: int


@dataclass(frozen=True)
class ExtendTimer:
    seconds: int


@dataclass(frozen=True)
class TimerComplete:
    pass


@dataclass(frozen=True)
class CompleteEarly:
    pass


@dataclass(frozen=True)
class SubmitReflection:
    text: str


@dataclass(frozen=True)
class SkipReflection:
    pass


@dataclass(frozen=True)
class Cancel:
    pass


SessionEvent = (
    StartSession
    | BeginDelay
    | TimerTick
    | LogSuds
    | ExtendTimer
    | TimerComplete
    | CompleteEarly
    | SubmitReflection
    | SkipReflection
    | Cancel
)


@dataclass
class SessionContext:
    """Data carried through one session."""

    exposure: Exposure | None = None
    suds_log: list[SudsEntry] = field(default_factory=list)
    started_at: datetime | None = None
    timer_duration: int = DEFAULT_TIMER_DURATION
    elapsed_time: int = 0
    reflection: str | None = None
    completed_early: bool = False

    @property
    def reached_target(self) -> bool:
        return self.elapsed_time >= self.timer_duration

    @property
    def last_suds(self) -> int | None:
        return self.suds_log[-1].value if self.suds_log else None


# =============================================================================
# Transition table
# =============================================================================
#
# (state, event type) -> (handler name, target state). A pair missing from the
# table means the event is not valid in that state and is ignored.
#
# =============================================================================

TRANSITIONS: dict[tuple[SessionState, type], tuple[str, SessionState]] = {
    (SessionState.IDLE, StartSession): ("_on_start", SessionState.TRIGGERED),
    (SessionState.TRIGGERED, BeginDelay): ("_on_begin_delay", SessionState.DELAY),
    (SessionState.TRIGGERED, Cancel): ("_on_cancel", SessionState.IDLE),
    (SessionState.DELAY, TimerTick): ("_on_tick", SessionState.DELAY),
    (SessionState.DELAY, LogSuds): ("_on_log_suds", SessionState.DELAY),
    (SessionState.DELAY, ExtendTimer): ("_on_extend", SessionState.DELAY),
    (SessionState.DELAY, TimerComplete): ("_on_timer_complete", SessionState.REFLECTION),
    (SessionState.DELAY, CompleteEarly): ("_on_complete_early", SessionState.REFLECTION),
    (SessionState.DELAY, Cancel): ("_on_cancel", SessionState.IDLE),
    (SessionState.REFLECTION, SubmitReflection): ("_on_reflection", SessionState.COMPLETE),
    (SessionState.REFLECTION, SkipReflection): ("_on_skip_reflection", SessionState.COMPLETE),
}


class SessionMachine:
    """
    In-memory session state machine.

    Args:
        clock: Returns the current time; used for the start timestamp and
            distress readings
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self.state = SessionState.IDLE
        self.context = SessionContext()
        # Context discarded by a cancel mid-exposure, kept for recording
        self.abandoned: SessionContext | None = None

    @property
    def done(self) -> bool:
        return self.state is SessionState.COMPLETE

    def can_send(self, event: SessionEvent) -> bool:
        return (self.state, type(event)) in TRANSITIONS

    def send(self, event: SessionEvent) -> bool:
        """Apply an event.

        Returns:
            True if the event was accepted, False if it was ignored
        """
        transition = TRANSITIONS.get((self.state, type(event)))
        if transition is None:
            logger.debug(
                "Event ignored",
                extra={"state": self.state.value, "event": type(event).__name__},
            )
            return False

        handler, target = transition
        if getattr(self, handler)(event) is False:
            return False

        if target is not self.state:
            logger.debug(
                "Session transition",
                extra={"from": self.state.value, "to": target.value},
            )
        self.state = target
        return True

    def reset(self) -> None:
        """Return to idle with a fresh context, e.g. after recording."""
        self.state = SessionState.IDLE
        self.context = SessionContext()
        self.abandoned = None

    # =========================================================================
    # Handlers
    # =========================================================================

    def _on_start(self, event: StartSession) -> None:
        self.context = SessionContext(exposure=event.exposure, started_at=self._clock())
        self.abandoned = None

    def _on_begin_delay(self, event: BeginDelay) -> None:
        exposure = self.context.exposure
        seed = exposure.suds_current if exposure and exposure.suds_current is not None else None
        self.context.suds_log = [
            SudsEntry(timestamp=self._clock(), value=DEFAULT_SUDS if seed is None else seed)
        ]

    def _on_tick(self, event: TimerTick) -> None:
        self.context.elapsed_time += 1

    def _on_log_suds(self, event: LogSuds) -> bool:
        if not 0 <= event.value <= 10:
            logger.warning("SUDS reading out of range", extra={"value": event.value})
            return False
        self.context.suds_log.append(SudsEntry(timestamp=self._clock(), value=event.value))
        return True

    def _on_extend(self, event: ExtendTimer) -> bool:
        if event.seconds <= 0:
            return False
        self.context.timer_duration += event.seconds
        return True

    def _on_timer_complete(self, event: TimerComplete) -> None:
        self.context.completed_early = False

    def _on_complete_early(self, event: CompleteEarly) -> None:
        self.context.completed_early = True

    def _on_reflection(self, event: SubmitReflection) -> None:
        self.context.reflection = event.text

    def _on_skip_reflection(self, event: SkipReflection) -> None:
        self.context.reflection = None

    def _on_cancel(self, event: Cancel) -> None:
        if self.state is SessionState.DELAY:
            self.abandoned = replace(self.context, suds_log=list(self.context.suds_log))
        self.context = SessionContext()
