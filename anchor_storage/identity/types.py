"""
Identity types and data classes.

Defines the user identity and device information that decide which
remote namespace the sync engine works in.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class AuthProvider(Enum):
    """Supported authentication providers."""

    CONFIG = "config"  # Local config file (dev/offline)
    ENTRA = "entra"  # Azure Entra ID


@dataclass
class DeviceInfo:
    """Information about the current device.

    Each device has a unique ID that persists across sessions. Several
    devices signed in as the same user share one remote namespace.
    """

    device_id: str
    device_name: str
    os_type: str  # windows, macos, linux
    first_seen: datetime
    last_seen: datetime

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "os_type": self.os_type,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceInfo":
        """Deserialize from dictionary."""
        return cls(
            device_id=data["device_id"],
            device_name=data["device_name"],
            os_type=data["os_type"],
            first_seen=datetime.fromisoformat(data["first_seen"]),
            last_seen=datetime.fromisoformat(data["last_seen"]),
        )


@dataclass
class UserIdentity:
    """The signed-in user.

    ``user_id`` is the only part the sync engine cares about: it scopes
    every remote read and write to ``users/{user_id}``.
    """

    user_id: str
    display_name: str
    email: str | None = None
    device: DeviceInfo | None = None
    auth_provider: AuthProvider = AuthProvider.CONFIG

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "email": self.email,
            "device": self.device.to_dict() if self.device else None,
            "auth_provider": self.auth_provider.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserIdentity":
        """Deserialize from dictionary."""
        device = None
        if data.get("device"):
            device = DeviceInfo.from_dict(data["device"])

        return cls(
            user_id=data["user_id"],
            display_name=data.get("display_name", data["user_id"]),
            email=data.get("email"),
            device=device,
            auth_provider=AuthProvider(data.get("auth_provider", "config")),
        )
