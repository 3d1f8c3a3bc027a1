"""Shared fixtures for Zhiyun BLE tests."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from unittest.mock import MagicMock

import pytest

from custom_components.zhiyun_ble.const import (
    NOTIFY_CHARACTERISTIC_UUID,
    SERVICE_UUID,
    WRITE_CHARACTERISTIC_UUID,
)
from custom_components.zhiyun_ble.exceptions import ConnectFailed, TransportUnavailable
from custom_components.zhiyun_ble.transport import Transport

# Short delays keep the timing tests fast while preserving their ordering
DEBOUNCE = 0.02
SETTLE = 0.03
INIT_START = 0.03
INIT_STEP = 0.01


@dataclass
class FakePeripheral:
    """Stand-in for a BLEDevice."""

    address: str
    name: str | None = None
    services: list[str] = field(default_factory=lambda: [SERVICE_UUID])
    characteristics: list[str] = field(
        default_factory=lambda: [WRITE_CHARACTERISTIC_UUID, NOTIFY_CHARACTERISTIC_UUID]
    )

    def __hash__(self) -> int:
        return hash(self.address)


@dataclass
class WrittenFrame:
    time: float
    address: str
    data: bytes


class FakeTransport(Transport):
    """In-memory transport that records every written frame."""

    def __init__(self) -> None:
        self.scan_callback = None
        self.scanning = False
        self.radio_available = True
        self.connect_error: str | None = None
        self.connected: set[str] = set()
        self.disconnect_callbacks: dict[str, object] = {}
        self.notify_callbacks: dict[str, object] = {}
        self.writes: list[WrittenFrame] = []
        self.connect_calls: list[str] = []

    async def start_scan(self, callback) -> None:
        if not self.radio_available:
            raise TransportUnavailable("Bluetooth is powered off")
        self.scan_callback = callback
        self.scanning = True

    async def stop_scan(self) -> None:
        self.scanning = False

    async def connect(self, handle, disconnected_callback) -> None:
        self.connect_calls.append(handle.address)
        await asyncio.sleep(0)
        if self.connect_error:
            raise ConnectFailed(self.connect_error)
        self.connected.add(handle.address)
        self.disconnect_callbacks[handle.address] = (handle, disconnected_callback)

    async def disconnect(self, handle) -> None:
        self.connected.discard(handle.address)
        self.notify_callbacks.pop(handle.address, None)

    async def discover_services(self, handle, uuids):
        return [uuid for uuid in handle.services if uuid in uuids]

    async def discover_characteristics(self, handle, service_uuid, uuids):
        return {uuid: f"char-{uuid[-4:]}" for uuid in handle.characteristics if uuid in uuids}

    async def write(self, handle, characteristic, data) -> bool:
        self.writes.append(
            WrittenFrame(asyncio.get_running_loop().time(), handle.address, bytes(data))
        )
        return True

    async def subscribe(self, handle, characteristic, callback) -> None:
        self.notify_callbacks[handle.address] = callback

    # Test helpers

    def advertise(self, peripheral: FakePeripheral) -> None:
        self.scan_callback(peripheral, peripheral.name)

    def notify(self, address: str, data: bytes) -> None:
        self.notify_callbacks[address](data)

    def drop(self, address: str, error: str = "Device unexpectedly disconnected") -> None:
        """Simulate the link going away without a disconnect request."""
        handle, callback = self.disconnect_callbacks[address]
        self.connected.discard(address)
        callback(handle, error)

    def frames_for(self, address: str) -> list[bytes]:
        return [w.data for w in self.writes if w.address == address]


def command_of(frame: bytes) -> int:
    """Return the command id of an encoded frame."""
    return frame[8] | (frame[9] << 8)


def payload_of(frame: bytes) -> bytes:
    return frame[10:-2]


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def light_a():
    return FakePeripheral("AA:BB:CC:DD:EE:01", "PL105_0001")


@pytest.fixture
def light_b():
    return FakePeripheral("AA:BB:CC:DD:EE:02", "PLX110_0002")


@pytest.fixture
def recording_writer():
    """Writer that collects (loop time, frame) for a bare DeviceSession."""
    writer = MagicMock()
    writer.frames = []

    def _write(session, frame):
        writer.frames.append((asyncio.get_running_loop().time(), frame))

    writer.side_effect = _write
    return writer
