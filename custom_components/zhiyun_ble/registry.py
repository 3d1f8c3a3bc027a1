"""Registry of active device sessions and command target resolution."""
from __future__ import annotations

import logging
from collections.abc import Iterator

from .session import DeviceSession

_LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """Owns the sessions of all connected devices, keyed by device id."""

    def __init__(self) -> None:
        self._sessions: dict[str, DeviceSession] = {}
        self._selected: str | None = None

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._sessions

    def __iter__(self) -> Iterator[DeviceSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def device_ids(self) -> list[str]:
        """Return connected device ids in connection order."""
        return list(self._sessions)

    @property
    def selected_device_id(self) -> str | None:
        """Return the device currently selected for control."""
        return self._selected

    def get(self, device_id: str) -> DeviceSession | None:
        """Return the session for a device, if connected."""
        return self._sessions.get(device_id)

    def add(self, session: DeviceSession) -> None:
        """Register a new session; it becomes selected if nothing is."""
        self._sessions[session.device_id] = session
        if self._selected is None:
            self._selected = session.device_id
            _LOGGER.debug("Selected device: %s", session.name)

    def remove(self, device_id: str) -> DeviceSession | None:
        """Drop a session, handing the selection to another device if needed."""
        session = self._sessions.pop(device_id, None)
        if self._selected == device_id:
            self._selected = next(iter(self._sessions), None)
            _LOGGER.debug("Selection moved from %s to %s", device_id, self._selected)
        return session

    def select(self, device_id: str) -> bool:
        """Select a connected device for control."""
        if device_id not in self._sessions:
            _LOGGER.debug("Cannot select %s: not connected", device_id)
            return False
        self._selected = device_id
        _LOGGER.debug("Selected device: %s", self._sessions[device_id].name)
        return True

    def resolve(
        self, device_id: str | None = None, all_devices: bool = False
    ) -> list[DeviceSession]:
        """Resolve a command target to the sessions it applies to.

        Args:
            device_id: Specific device, or None for selected/all
            all_devices: If True and device_id is None, every connected
                device, ignoring the selection

        With neither an explicit device nor all_devices, the selected device
        is used; when nothing is selected the command goes to every device.
        """
        if device_id is not None:
            session = self._sessions.get(device_id)
            return [session] if session is not None else []
        if all_devices:
            return list(self._sessions.values())
        if self._selected is not None and self._selected in self._sessions:
            return [self._sessions[self._selected]]
        return list(self._sessions.values())
