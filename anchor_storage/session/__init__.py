"""Exposure session state machine and its persistence side effects."""

from .machine import (
    BeginDelay,
    Cancel,
    CompleteEarly,
    ExtendTimer,
    LogSuds,
    SessionContext,
    SessionEvent,
    SessionMachine,
    SessionState,
    SkipReflection,
    StartSession,
    SubmitReflection,
    TimerComplete,
    TimerTick,
)
from .recorder import SessionRecorder

__all__ = [
    "BeginDelay",
    "Cancel",
    "CompleteEarly",
    "ExtendTimer",
    "LogSuds",
    "SessionContext",
    "SessionEvent",
    "SessionMachine",
    "SessionRecorder",
    "SessionState",
    "SkipReflection",
    "StartSession",
    "SubmitReflection",
    "TimerComplete",
    "TimerTick",
]
