"""
Composition root.

Wires the local store, repository, session recorder and sync engine
together and binds the engine's lifecycle to the identity gate: a signed-in
user starts sync in that user's namespace, signing out stops it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, tzinfo
from typing import Any

from .identity import IdentityGate, UserIdentity
from .local import AnchorRepository, LocalStore, LocalStoreConfig
from .logging_utils import LoggingConfig, configure_logging
from .remote import RemoteStore
from .session import SessionMachine, SessionRecorder
from .sync import SyncConfig, SyncEngine
from .timestamps import utc_now

logger = logging.getLogger(__name__)


class AnchorApp:
    """
    One running instance of the storage core.

    Usage:
        async with AnchorApp(store, remote, gate) as app:
            exposure = await app.repository.create_exposure("Touch door handle", 6)
            await gate.set_user(identity)  # sync starts
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        gate: IdentityGate,
        sync_config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        tz: tzinfo | None = None,
    ):
        self.store = store
        self.remote = remote
        self.gate = gate
        self._clock = clock
        self.repository = AnchorRepository(store, clock=clock, tz=tz)
        self.engine = SyncEngine(store, remote, sync_config)
        self.recorder = SessionRecorder(self.repository, clock=clock)
        self._unsubscribe: Callable[[], None] | None = None

    @classmethod
    async def create(
        cls,
        remote: RemoteStore,
        gate: IdentityGate | None = None,
        local_config: LocalStoreConfig | None = None,
        sync_config: SyncConfig | None = None,
        logging_config: LoggingConfig | None = None,
    ) -> AnchorApp:
        """Set up logging, open the local store from config and start following the gate.

        Every config left as None is read from the environment.
        """
        configure_logging(logging_config or LoggingConfig.from_env())
        store = await LocalStore.create(local_config)
        app = cls(store, remote, gate or IdentityGate(), sync_config or SyncConfig.from_env())
        await app.open()
        return app

    def new_session(self) -> SessionMachine:
        """A fresh session machine sharing this app's clock."""
        return SessionMachine(clock=self._clock)

    async def open(self) -> None:
        """Bind sync to the identity gate.

        If a user is already signed in, sync starts immediately.
        """
        if self._unsubscribe is not None:
            return
        await self.store.initialize()
        self._unsubscribe = self.gate.subscribe(self._on_identity_changed)
        if self.gate.current_user is not None:
            await self.engine.start(self.gate.current_user.user_id)

    async def close(self) -> None:
        """Stop sync and release the store and the remote connection."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.engine.stop()
        await self.remote.close()
        await self.store.close()
        logger.info("Anchor storage closed")

    async def _on_identity_changed(self, identity: UserIdentity | None) -> None:
        if identity is None:
            await self.engine.stop()
        else:
            await self.engine.start(identity.user_id)

    async def __aenter__(self) -> AnchorApp:
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
