"""
Config file identity provider.

Reads the signed-in user from a local configuration file. Used for
development and for single-user installs that sync to a personal remote
store.
"""

import getpass
import logging
import platform
import socket
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from ..exceptions import AuthenticationRequiredError
from .provider import IdentityProvider
from .types import AuthProvider, DeviceInfo, UserIdentity

logger = logging.getLogger(__name__)


class ConfigFileIdentityProvider(IdentityProvider):
    """Identity provider that reads from local config.

    Configuration in ~/.anchor/settings.yaml:

    ```yaml
    identity:
      user_id: "user-abc123"
      display_name: "Alice"
      email: "alice@example.com"
      device_name: "Alice's Laptop"  # Optional, auto-detected if not set
    ```

    Without an ``identity.user_id`` the user is signed out.
    """

    def __init__(self, config_path: Path | None = None):
        """Initialize the config file provider.

        Args:
            config_path: Path to settings.yaml. Defaults to ~/.anchor/settings.yaml
        """
        self.config_path = config_path or Path.home() / ".anchor" / "settings.yaml"
        self._identity: UserIdentity | None = None
        self._device_id: str | None = None

    async def get_current_identity(self) -> UserIdentity:
        """Get the current user identity from config.

        Returns cached identity if available, otherwise loads from config.
        """
        if self._identity is not None:
            if self._identity.device:
                self._identity.device.last_seen = datetime.now(UTC)
            return self._identity

        identity_config = self._load_config().get("identity") or {}
        user_id = identity_config.get("user_id")
        if not user_id:
            raise AuthenticationRequiredError("No identity configured in " + str(self.config_path))

        device_id = await self.get_device_id()
        now = datetime.now(UTC)
        device = DeviceInfo(
            device_id=device_id,
            device_name=identity_config.get("device_name", self._get_hostname()),
            os_type=self._get_os_type(),
            first_seen=now,
            last_seen=now,
        )

        self._identity = UserIdentity(
            user_id=str(user_id),
            display_name=identity_config.get("display_name", self._get_default_display_name()),
            email=identity_config.get("email"),
            device=device,
            auth_provider=AuthProvider.CONFIG,
        )
        return self._identity

    async def sign_in(
        self,
        user_id: str,
        display_name: str | None = None,
        email: str | None = None,
    ) -> UserIdentity:
        """Write the identity section and return the new identity."""
        config = self._load_config()
        identity_config: dict[str, Any] = config.setdefault("identity", {})
        identity_config["user_id"] = user_id
        if display_name is not None:
            identity_config["display_name"] = display_name
        if email is not None:
            identity_config["email"] = email

        self._write_config(config)
        self._identity = None
        return await self.get_current_identity()

    async def sign_out(self) -> None:
        """Forget the signed-in user.

        Removes ``identity.user_id`` from the config file; the device id
        is kept.
        """
        config = self._load_config()
        identity_config = config.get("identity")
        if identity_config and "user_id" in identity_config:
            del identity_config["user_id"]
            self._write_config(config)
        self._identity = None

    @property
    def provider_type(self) -> AuthProvider:
        """Return CONFIG provider type."""
        return AuthProvider.CONFIG

    async def get_device_id(self) -> str:
        """Get or create persistent device ID.

        The device ID is stored in ~/.anchor/.device_id and persists
        across sessions.
        """
        if self._device_id is not None:
            return self._device_id

        device_file = self.config_path.parent / ".device_id"

        if device_file.exists():
            self._device_id = device_file.read_text().strip()
            return self._device_id

        self._device_id = str(uuid.uuid4())
        device_file.parent.mkdir(parents=True, exist_ok=True)
        device_file.write_text(self._device_id)

        return self._device_id

    def _load_config(self) -> dict[str, Any]:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            return {}

        try:
            return yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Ignoring unreadable settings file {self.config_path}: {e}")
            return {}

    def _write_config(self, config: dict[str, Any]) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(yaml.safe_dump(config, default_flow_style=False))

    def _get_hostname(self) -> str:
        """Get the hostname for device name."""
        try:
            return socket.gethostname()
        except OSError:
            return "unknown-device"

    def _get_os_type(self) -> str:
        """Get the OS type (windows, macos, linux)."""
        system = platform.system().lower()
        if system == "darwin":
            return "macos"
        return system

    def _get_default_display_name(self) -> str:
        try:
            return getpass.getuser().title()
        except (KeyError, OSError):
            return "Local User"
