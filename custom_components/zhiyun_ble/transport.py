"""BLE transport used by the controller.

The controller only talks to the abstract Transport. BleakTransport is the
implementation backed by bleak and bleak-retry-connector; tests use an
in-memory fake.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError
from bleak_retry_connector import BLEAK_RETRY_EXCEPTIONS as BLEAK_EXCEPTIONS
from bleak_retry_connector import (
    BleakClientWithServiceCache,
    BleakNotFoundError,
    establish_connection,
)

from .exceptions import ConnectFailed, TransportUnavailable
from . import protocol

_LOGGER = logging.getLogger(__name__)

# Called with (handle, advertised name)
DiscoveryCallback = Callable[[Any, "str | None"], None]
# Called with (handle, error text or None for an expected disconnect)
DisconnectCallback = Callable[[Any, "str | None"], None]
NotificationCallback = Callable[[bytes], None]

NOTIFY_SETTLE_TIME = 0.1


class Transport(ABC):
    """Asynchronous BLE operations the protocol engine depends on."""

    def device_id(self, handle: Any) -> str:
        """Return the stable identity of a peripheral handle."""
        return handle.address

    def device_name(self, handle: Any) -> str | None:
        """Return the name a peripheral handle advertised, if any."""
        return getattr(handle, "name", None)

    @abstractmethod
    async def start_scan(self, callback: DiscoveryCallback) -> None:
        """Start reporting advertising peripherals. Raises TransportUnavailable."""

    @abstractmethod
    async def stop_scan(self) -> None:
        """Stop scanning."""

    @abstractmethod
    async def connect(self, handle: Any, disconnected_callback: DisconnectCallback) -> None:
        """Connect to a peripheral. Raises ConnectFailed."""

    @abstractmethod
    async def disconnect(self, handle: Any) -> None:
        """Disconnect from a peripheral."""

    @abstractmethod
    async def discover_services(self, handle: Any, uuids: list[str]) -> list[str]:
        """Return which of the requested service UUIDs the peripheral offers."""

    @abstractmethod
    async def discover_characteristics(
        self, handle: Any, service_uuid: str, uuids: list[str]
    ) -> dict[str, Any]:
        """Return {uuid: characteristic handle} for the requested characteristics."""

    @abstractmethod
    async def write(self, handle: Any, characteristic: Any, data: bytes) -> bool:
        """Write without response. Returns False if the write failed locally."""

    @abstractmethod
    async def subscribe(
        self, handle: Any, characteristic: Any, callback: NotificationCallback
    ) -> None:
        """Enable notifications on a characteristic."""


class BleakTransport(Transport):
    """Transport backed by bleak."""

    def __init__(self) -> None:
        self._scanner: BleakScanner | None = None
        self._clients: dict[str, BleakClientWithServiceCache] = {}
        self._devices: dict[str, BLEDevice] = {}
        self._expected_disconnects: set[str] = set()

    def update_device(self, device: BLEDevice) -> None:
        """Remember the freshest BLEDevice for an address (used on reconnect)."""
        self._devices[device.address] = device

    async def start_scan(self, callback: DiscoveryCallback) -> None:
        def detection_callback(device: BLEDevice, adv_data: AdvertisementData) -> None:
            self.update_device(device)
            callback(device, adv_data.local_name or device.name)

        if self._scanner is not None:
            return
        scanner = BleakScanner(detection_callback)
        try:
            await scanner.start()
        except (BleakError, OSError) as ex:
            raise TransportUnavailable(f"Bluetooth is not available: {ex}") from ex
        self._scanner = scanner
        _LOGGER.debug("Scanning started")

    async def stop_scan(self) -> None:
        scanner = self._scanner
        self._scanner = None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except BleakError as ex:
            _LOGGER.debug("Error stopping scanner: %s", ex)
        _LOGGER.debug("Scanning stopped")

    async def connect(self, handle: BLEDevice, disconnected_callback: DisconnectCallback) -> None:
        address = handle.address
        self.update_device(handle)
        self._expected_disconnects.discard(address)

        def _on_disconnected(client: BleakClientWithServiceCache) -> None:
            self._clients.pop(address, None)
            if address in self._expected_disconnects:
                self._expected_disconnects.discard(address)
                _LOGGER.debug("Disconnected from %s", address)
                disconnected_callback(handle, None)
                return
            _LOGGER.warning("Device %s unexpectedly disconnected", address)
            disconnected_callback(handle, "Device unexpectedly disconnected")

        _LOGGER.debug("Connecting to %s (%s)", handle.name, address)
        try:
            client = await establish_connection(
                BleakClientWithServiceCache,
                handle,
                handle.name or address,
                disconnected_callback=_on_disconnected,
                use_services_cache=True,
                ble_device_callback=lambda: self._devices.get(address, handle),
            )
        except BleakNotFoundError as ex:
            raise ConnectFailed(f"Device {address} not found") from ex
        except BLEAK_EXCEPTIONS as ex:
            raise ConnectFailed(f"Failed to connect to {address}: {ex}") from ex
        self._clients[address] = client

    async def disconnect(self, handle: Any) -> None:
        address = self.device_id(handle)
        client = self._clients.pop(address, None)
        if client is None:
            return
        self._expected_disconnects.add(address)
        if not client.is_connected:
            return
        try:
            await client.disconnect()
        except BleakError as ex:
            _LOGGER.debug("Error disconnecting from %s: %s", address, ex)

    def _client(self, handle: Any) -> BleakClientWithServiceCache:
        address = self.device_id(handle)
        client = self._clients.get(address)
        if client is None or not client.is_connected:
            raise ConnectFailed(f"Not connected to {address}")
        return client

    async def discover_services(self, handle: Any, uuids: list[str]) -> list[str]:
        client = self._client(handle)
        wanted = {uuid.lower() for uuid in uuids}
        found = [service.uuid.lower() for service in client.services if service.uuid.lower() in wanted]
        for uuid in found:
            _LOGGER.debug("Found service %s on %s", uuid, client.address)
        return found

    async def discover_characteristics(
        self, handle: Any, service_uuid: str, uuids: list[str]
    ) -> dict[str, Any]:
        client = self._client(handle)
        service = client.services.get_service(service_uuid)
        if service is None:
            raise ConnectFailed(f"Service {service_uuid} not found on {client.address}")
        wanted = {uuid.lower() for uuid in uuids}
        return {
            char.uuid.lower(): char
            for char in service.characteristics
            if char.uuid.lower() in wanted
        }

    async def write(self, handle: Any, characteristic: Any, data: bytes) -> bool:
        try:
            client = self._client(handle)
            await client.write_gatt_char(characteristic, data, response=False)
        except (BleakError, ConnectFailed) as ex:
            _LOGGER.error(
                "Failed to write %s to %s: %s",
                protocol.format_bytes_hex(data), self.device_id(handle), ex,
            )
            return False
        return True

    async def subscribe(
        self, handle: Any, characteristic: Any, callback: NotificationCallback
    ) -> None:
        client = self._client(handle)

        def _notification_handler(_sender: Any, data: bytearray) -> None:
            callback(bytes(data))

        try:
            await client.start_notify(characteristic, _notification_handler)
        except BleakError as ex:
            raise ConnectFailed(f"Failed to enable notifications: {ex}") from ex
        # Give the BLE stack a moment to register the notification handler
        await asyncio.sleep(NOTIFY_SETTLE_TIME)
