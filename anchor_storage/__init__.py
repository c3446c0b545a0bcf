"""
Anchor Storage

Offline-first storage core for an exposure-therapy tracker.

Provides:
- A durable local store (SQLite) that is the UI's source of truth
- A bidirectional sync engine against a per-user remote document store
- The exposure session state machine and its persistence side effects

Usage:

    >>> from anchor_storage import AnchorApp, IdentityGate, LocalStore
    >>> from anchor_storage.remote.cosmos import CosmosRemoteStore
    >>> store = await LocalStore.create()
    >>> remote = await CosmosRemoteStore.create()
    >>> gate = IdentityGate()
    >>> async with AnchorApp(store, remote, gate) as app:
    ...     exposure = await app.repository.create_exposure("Touch door handle", 6)
    ...     await gate.set_user(identity)  # starts sync for identity.user_id

Session flow:

    >>> machine = app.new_session()
    >>> machine.send(StartSession(exposure))
    >>> machine.send(BeginDelay())
    >>> for _ in range(600):
    ...     machine.send(TimerTick())
    >>> machine.send(TimerComplete())
    >>> machine.send(SubmitReflection("calmer now"))
    >>> session = await app.recorder.record_completion(machine)
"""

from .app import AnchorApp

# Exceptions
from .exceptions import (
    AnchorStorageError,
    AuthenticationError,
    AuthenticationRequiredError,
    InvalidSessionStateError,
    RecordNotFoundError,
    StorageConnectionError,
    StorageIOError,
    SyncError,
    ValidationError,
)

# Identity module
from .identity import ConfigFileIdentityProvider, IdentityGate, IdentityProvider, UserIdentity
from .local import AnchorRepository, LocalStore, LocalStoreConfig
from .logging_utils import LoggingConfig, configure_logging
from .models import (
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
from .remote import RemoteChange, RemoteStore, RemoteWrite
from .session import (
    BeginDelay,
    Cancel,
    CompleteEarly,
    ExtendTimer,
    LogSuds,
    SessionMachine,
    SessionRecorder,
    SessionState,
    SkipReflection,
    StartSession,
    SubmitReflection,
    TimerComplete,
    TimerTick,
)
from .sync import RetryConfig, SyncConfig, SyncEngine, SyncResult, SyncState

# Conditional import for the Cosmos remote
try:
    from .remote.cosmos import CosmosRemoteConfig, CosmosRemoteStore  # noqa: F401

    _has_cosmos = True
except ImportError:
    _has_cosmos = False


__all__ = [
    # Composition
    "AnchorApp",
    # Local
    "AnchorRepository",
    "LocalStore",
    "LocalStoreConfig",
    # Logging
    "LoggingConfig",
    "configure_logging",
    # Models
    "CheckInOutcome",
    "Envelope",
    "Exposure",
    "OutcomeCheckIn",
    "ReassuranceUrge",
    "Session",
    "SessionOutcome",
    "Settings",
    "Streak",
    "SudsEntry",
    "SyncStatus",
    # Remote
    "RemoteChange",
    "RemoteStore",
    "RemoteWrite",
    # Session
    "BeginDelay",
    "Cancel",
    "CompleteEarly",
    "ExtendTimer",
    "LogSuds",
    "SessionMachine",
    "SessionRecorder",
    "SessionState",
    "SkipReflection",
    "StartSession",
    "SubmitReflection",
    "TimerComplete",
    "TimerTick",
    # Sync
    "RetryConfig",
    "SyncConfig",
    "SyncEngine",
    "SyncResult",
    "SyncState",
    # Identity
    "ConfigFileIdentityProvider",
    "IdentityGate",
    "IdentityProvider",
    "UserIdentity",
    # Exceptions
    "AnchorStorageError",
    "AuthenticationError",
    "AuthenticationRequiredError",
    "InvalidSessionStateError",
    "RecordNotFoundError",
    "StorageConnectionError",
    "StorageIOError",
    "SyncError",
    "ValidationError",
]

# Add optional exports
if _has_cosmos:
    __all__.extend(["CosmosRemoteConfig", "CosmosRemoteStore"])

__version__ = "0.1.0"
