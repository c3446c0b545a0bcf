"""
Identity provider abstract interface.

Defines the contract that all identity providers must implement.
"""

from abc import ABC, abstractmethod

from .types import AuthProvider, UserIdentity


class IdentityProvider(ABC):
    """Abstract identity provider.

    The provider is responsible for:
    - Resolving the current user identity
    - Managing device registration
    - Sign out / credential clearing
    """

    @abstractmethod
    async def get_current_identity(self) -> UserIdentity:
        """Get the current authenticated user identity.

        Raises:
            AuthenticationRequiredError: If signed out
        """
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        """Sign out and clear cached credentials.

        After sign out, get_current_identity() raises
        AuthenticationRequiredError until signed in again.
        """
        ...

    @property
    @abstractmethod
    def provider_type(self) -> AuthProvider:
        """Get the provider type."""
        ...

    @abstractmethod
    async def get_device_id(self) -> str:
        """Get the unique, persistent device identifier."""
        ...
