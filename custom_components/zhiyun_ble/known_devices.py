"""Known devices eligible for automatic reconnection."""
from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Callable

from .const import KNOWN_DEVICES_KEY

_LOGGER = logging.getLogger(__name__)


class KnownDeviceStore(ABC):
    """Persistence contract for the known device set."""

    @abstractmethod
    def load(self) -> set[str]:
        """Return the persisted device ids."""

    @abstractmethod
    def save(self, device_ids: set[str]) -> None:
        """Persist the given device ids, replacing what was stored."""


class MemoryKnownDeviceStore(KnownDeviceStore):
    """Keeps known devices for the lifetime of the process only."""

    def __init__(self, device_ids: set[str] | None = None) -> None:
        self._device_ids = set(device_ids or ())

    def load(self) -> set[str]:
        return set(self._device_ids)

    def save(self, device_ids: set[str]) -> None:
        self._device_ids = set(device_ids)


class JsonKnownDeviceStore(KnownDeviceStore):
    """Stores known devices in a small JSON file."""

    def __init__(self, path: str) -> None:
        self._path = path

    @property
    def path(self) -> str:
        """Return the file the ids are stored in."""
        return self._path

    def load(self) -> set[str]:
        if not os.path.exists(self._path):
            return set()
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as ex:
            _LOGGER.warning("Could not read known devices from %s: %s", self._path, ex)
            return set()
        if not isinstance(data, dict):
            return set()
        return {str(device_id) for device_id in data.get(KNOWN_DEVICES_KEY, [])}

    def save(self, device_ids: set[str]) -> None:
        try:
            with open(self._path, "w", encoding="utf-8") as f:
                json.dump({KNOWN_DEVICES_KEY: sorted(device_ids)}, f, indent=2)
        except OSError as ex:
            _LOGGER.warning("Could not save known devices to %s: %s", self._path, ex)


class KnownDeviceRegistry:
    """Set of device ids that are reconnected automatically when seen."""

    def __init__(
        self,
        store: KnownDeviceStore | None = None,
        device_ids: set[str] | None = None,
        saver: Callable[[set[str]], None] | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            store: Persistence backend, in-memory if omitted
            device_ids: Already loaded ids; the store is not read when given
            saver: Replaces store.save, e.g. to hand the write to an executor
        """
        self._store = store or MemoryKnownDeviceStore()
        self._save = saver or self._store.save
        if device_ids is None:
            device_ids = self._store.load()
        self._device_ids = set(device_ids)
        _LOGGER.debug("Loaded %d known device(s)", len(self._device_ids))

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._device_ids

    def __len__(self) -> int:
        return len(self._device_ids)

    @property
    def device_ids(self) -> frozenset[str]:
        """Return a snapshot of the known ids."""
        return frozenset(self._device_ids)

    def add(self, device_id: str) -> bool:
        """Remember a device. Returns False if it was already known."""
        if device_id in self._device_ids:
            return False
        self._device_ids.add(device_id)
        self._save(set(self._device_ids))
        _LOGGER.info("Saved device to known devices: %s", device_id)
        return True

    def clear(self) -> None:
        """Forget all known devices."""
        self._device_ids.clear()
        self._save(set())
        _LOGGER.info("Cleared all known devices")
