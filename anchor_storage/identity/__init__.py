"""
Identity management for anchor storage.

Provides the user identity that scopes remote sync, the providers that
resolve it, and the gate that starts and stops sync on sign in/out.
"""

from .config_provider import ConfigFileIdentityProvider
from .gate import IdentityCallback, IdentityGate
from .provider import IdentityProvider
from .types import AuthProvider, DeviceInfo, UserIdentity

__all__ = [
    # Types
    "AuthProvider",
    "DeviceInfo",
    "UserIdentity",
    # Providers
    "IdentityProvider",
    "ConfigFileIdentityProvider",
    # Gate
    "IdentityCallback",
    "IdentityGate",
]
