"""
Observable "current user" signal.

The sync engine runs exactly while a user is signed in. The gate holds the
current identity and notifies subscribers whenever the signed-in user id
changes (sign in, sign out, or a switch to another account).
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from ..exceptions import AuthenticationRequiredError
from .provider import IdentityProvider
from .types import UserIdentity

logger = logging.getLogger(__name__)

IdentityCallback = Callable[[UserIdentity | None], Awaitable[None]]


class IdentityGate:
    """Holds the current user and fans out transitions.

    Usage:
        gate = IdentityGate()
        unsubscribe = gate.subscribe(on_user_changed)
        await gate.set_user(identity)  # notifies
        await gate.set_user(identity)  # same user, no notification
        await gate.set_user(None)      # signed out, notifies
        unsubscribe()
    """

    def __init__(self) -> None:
        self._current: UserIdentity | None = None
        self._subscribers: list[IdentityCallback] = []

    @property
    def current_user(self) -> UserIdentity | None:
        return self._current

    @property
    def user_id(self) -> str | None:
        return self._current.user_id if self._current else None

    def subscribe(self, callback: IdentityCallback) -> Callable[[], None]:
        """Register a callback for user transitions.

        Returns:
            A function that removes the callback again
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def set_user(self, identity: UserIdentity | None) -> bool:
        """Set the current user.

        Returns:
            True if this was a transition and subscribers were notified
        """
        previous = self.user_id
        self._current = identity
        if previous == self.user_id:
            return False

        logger.info(
            "Identity changed",
            extra={"previous_user_id": previous, "user_id": self.user_id},
        )
        for callback in list(self._subscribers):
            try:
                await callback(identity)
            except Exception as e:
                logger.error(f"Identity subscriber failed: {e}", extra={"user_id": self.user_id})
        return True

    async def refresh(self, provider: IdentityProvider) -> UserIdentity | None:
        """Resolve the identity from a provider and publish it."""
        try:
            identity = await provider.get_current_identity()
        except AuthenticationRequiredError:
            identity = None
        await self.set_user(identity)
        return identity
