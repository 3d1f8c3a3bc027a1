"""Controller for Zhiyun BLE lights.

Drives each device through discovery, connection, GATT discovery and
initialization, fans control requests out to device sessions and tears
sessions down on disconnect.

All state is owned by one asyncio event loop. Transport callbacks run on
that loop, so no locking is needed.
"""
from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
from typing import Any, Callable

from .const import (
    DEBOUNCE_DELAY,
    INIT_START_DELAY,
    INIT_STEP_DELAY,
    NOTIFY_CHARACTERISTIC_UUID,
    SERVICE_UUID,
    SETTLE_DELAY,
    UNKNOWN_MODEL_NAME,
    WRITE_CHARACTERISTIC_UUID,
    ConnectionState,
)
from .exceptions import ConnectFailed, TransportUnavailable
from .known_devices import KnownDeviceRegistry, KnownDeviceStore
from .registry import SessionRegistry
from .session import DeviceSession, DeviceState
from .transport import Transport
from . import protocol

_LOGGER = logging.getLogger(__name__)


class ZhiyunController:
    """Single owner of every Zhiyun light session."""

    def __init__(
        self,
        transport: Transport,
        known_store: KnownDeviceStore | None = None,
        *,
        debounce_delay: float = DEBOUNCE_DELAY,
        settle_delay: float = SETTLE_DELAY,
        init_start_delay: float = INIT_START_DELAY,
        init_step_delay: float = INIT_STEP_DELAY,
        auto_connect: bool = True,
        known_devices: KnownDeviceRegistry | None = None,
    ) -> None:
        """Initialize the controller.

        Must be created from within a running event loop.

        Args:
            transport: BLE transport
            known_store: Persistence for auto-reconnect device ids
            debounce_delay: Quiet period before brightness/CCT is sent
            settle_delay: Pause after a power-on before brightness is sent
            init_start_delay: Pause between notifications starting and the first query
            init_step_delay: Spacing of the initialization queries
            auto_connect: Connect to known devices when they are discovered
            known_devices: Prebuilt known-device registry; known_store is ignored when given
        """
        self._transport = transport
        self._loop = asyncio.get_running_loop()
        self._debounce_delay = debounce_delay
        self._settle_delay = settle_delay
        self._init_start_delay = init_start_delay
        self._init_step_delay = init_step_delay
        self._auto_connect = auto_connect

        self._registry = SessionRegistry()
        if known_devices is None:
            known_devices = KnownDeviceRegistry(known_store)
        self._known = known_devices
        self._discovered: dict[str, Any] = {}
        self._names: dict[str, str] = {}
        self._states: dict[str, ConnectionState] = {}
        self._connecting: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._callbacks: list[Callable[[], None]] = []

        self._is_scanning = False
        self._last_error: str | None = None

    # ----- Query surface -----

    @property
    def is_scanning(self) -> bool:
        """Return True while a scan is running."""
        return self._is_scanning

    @property
    def last_error(self) -> str | None:
        """Return the last error or status message worth showing to a user."""
        return self._last_error

    @property
    def selected_device_id(self) -> str | None:
        """Return the device commands go to by default."""
        return self._registry.selected_device_id

    @property
    def connected_devices(self) -> list[str]:
        """Return ids of connected devices in connection order."""
        return self._registry.device_ids

    @property
    def discovered_devices(self) -> list[str]:
        """Return ids of supported devices seen while scanning."""
        return list(self._discovered)

    @property
    def known_devices(self) -> frozenset[str]:
        """Return ids that are reconnected automatically when seen."""
        return self._known.device_ids

    @property
    def device_states(self) -> dict[str, DeviceState]:
        """Return a copy of the cached state of every connected device."""
        return {
            session.device_id: dataclasses.replace(session.device_state)
            for session in self._registry
        }

    def device_state(self, device_id: str | None = None) -> DeviceState | None:
        """Return a copy of a device's cached state (selected device by default)."""
        if device_id is None:
            device_id = self.selected_device_id
        if device_id is None:
            return None
        session = self._registry.get(device_id)
        if session is None:
            return None
        return dataclasses.replace(session.device_state)

    def device_name(self, device_id: str) -> str | None:
        """Return the advertised name of a discovered device."""
        return self._names.get(device_id)

    def connection_state(self, device_id: str) -> ConnectionState | None:
        """Return where a device is in the connection lifecycle."""
        session = self._registry.get(device_id)
        if session is not None:
            return session.state
        return self._states.get(device_id)

    def is_connected(self, device_id: str) -> bool:
        """Return True if the device has a live session."""
        return device_id in self._registry

    def is_ready(self, device_id: str) -> bool:
        """Return True once the device has finished initialization."""
        return self.connection_state(device_id) == ConnectionState.READY

    def is_known(self, device_id: str) -> bool:
        """Return True if the device is in the known set."""
        return device_id in self._known

    # ----- Callbacks -----

    def register_callback(self, callback_fn: Callable[[], None]) -> None:
        """Register a callback for state updates."""
        self._callbacks.append(callback_fn)

    def unregister_callback(self, callback_fn: Callable[[], None]) -> None:
        """Unregister a callback."""
        if callback_fn in self._callbacks:
            self._callbacks.remove(callback_fn)

    def _notify_callbacks(self) -> None:
        """Notify all registered callbacks."""
        for callback_fn in list(self._callbacks):
            try:
                callback_fn()
            except Exception as ex:
                _LOGGER.exception("Error in callback: %s", ex)

    def _set_error(self, message: str | None) -> None:
        self._last_error = message
        self._notify_callbacks()

    # ----- Scanning -----

    async def start_scanning(self) -> bool:
        """Start scanning for supported lights. Returns False if the radio is unavailable."""
        if self._is_scanning:
            return True
        _LOGGER.info("Starting scan for Zhiyun devices...")
        try:
            await self._transport.start_scan(self.handle_discovered)
        except TransportUnavailable as ex:
            _LOGGER.warning("Cannot scan: %s", ex)
            self._set_error(str(ex))
            return False
        self._is_scanning = True
        self._notify_callbacks()
        return True

    async def stop_scanning(self) -> None:
        """Stop a running scan."""
        if not self._is_scanning:
            return
        _LOGGER.info("Stopping scan")
        await self._transport.stop_scan()
        self._is_scanning = False
        self._notify_callbacks()

    async def handle_radio_state(self, available: bool) -> None:
        """React to the Bluetooth radio becoming available or going away."""
        if available:
            _LOGGER.info("Bluetooth is powered on")
            await self.start_scanning()
            return
        _LOGGER.warning("Bluetooth is not available")
        self._is_scanning = False
        self._set_error("Bluetooth is not available")

    def handle_discovered(self, handle: Any, name: str | None = None) -> bool:
        """Record an advertising peripheral. Returns True if it is a supported light."""
        name = name or self._transport.device_name(handle)
        if protocol.match_model(name) is None:
            return False

        device_id = self._transport.device_id(handle)
        is_new = device_id not in self._discovered
        self._discovered[device_id] = handle
        self._names[device_id] = name
        if is_new:
            _LOGGER.info("Discovered: %s (%s)", name, device_id)
            if device_id not in self._registry and device_id not in self._connecting:
                self._states[device_id] = ConnectionState.DISCOVERED
            self._notify_callbacks()

        if (
            self._auto_connect
            and device_id in self._known
            and device_id not in self._registry
            and device_id not in self._connecting
        ):
            _LOGGER.info("Auto-connecting to known device: %s", name)
            self._spawn(self.connect(device_id))
        return True

    # ----- Connection lifecycle -----

    async def connect(self, device_id: str) -> bool:
        """Connect to a discovered device and bring it up to READY.

        Concurrent calls for the same device share one connection attempt.
        Returns True once initialization has been scheduled.
        """
        if (task := self._connecting.get(device_id)) is not None:
            _LOGGER.debug("Connection to %s already in progress", device_id)
            return await asyncio.shield(task)
        if device_id in self._registry:
            _LOGGER.debug("Already connected to %s", self._names.get(device_id, device_id))
            return True
        handle = self._discovered.get(device_id)
        if handle is None:
            _LOGGER.warning("Cannot connect to %s: device has not been discovered", device_id)
            self._set_error(f"Unknown device {device_id}")
            return False

        task = self._loop.create_task(self._connect(device_id, handle))
        self._connecting[device_id] = task
        task.add_done_callback(lambda _: self._connecting.pop(device_id, None))
        return await asyncio.shield(task)

    async def _connect(self, device_id: str, handle: Any) -> bool:
        name = self._names.get(device_id) or device_id
        _LOGGER.info("Connecting to %s...", name)
        self._states[device_id] = ConnectionState.CONNECTING
        self._notify_callbacks()
        try:
            await self._transport.connect(handle, self._on_transport_disconnected)
        except ConnectFailed as ex:
            _LOGGER.warning("Failed to connect to %s: %s", name, ex)
            self._states[device_id] = ConnectionState.DISCONNECTED
            self._set_error(str(ex))
            return False

        _LOGGER.info("Connected to %s", name)
        session = self._create_session(device_id, handle, name)
        try:
            return await self._setup_gatt(session)
        except ConnectFailed as ex:
            _LOGGER.error("%s: GATT setup failed: %s", name, ex)
            self._last_error = str(ex)
            await self.disconnect(device_id)
            return False

    def _create_session(self, device_id: str, handle: Any, name: str) -> DeviceSession:
        session = DeviceSession(
            device_id,
            handle,
            self._write,
            self._loop,
            debounce_delay=self._debounce_delay,
            settle_delay=self._settle_delay,
            on_update=self._notify_callbacks,
        )
        session.device_state.device_name = name
        if model := protocol.match_model(name):
            session.device_state.model_code, session.device_state.model_name = model
            _LOGGER.debug("Device model: %s (%s)", model[0], model[1])
        else:
            session.device_state.model_name = UNKNOWN_MODEL_NAME
        self._registry.add(session)
        self._states.pop(device_id, None)
        self._notify_callbacks()
        return session

    def _is_current(self, session: DeviceSession) -> bool:
        return not session.closed and self._registry.get(session.device_id) is session

    async def _setup_gatt(self, session: DeviceSession) -> bool:
        handle = session.handle

        services = await self._transport.discover_services(handle, [SERVICE_UUID])
        if not self._is_current(session):
            return False
        if SERVICE_UUID not in services:
            raise ConnectFailed(f"Service {SERVICE_UUID} not found")
        session.state = ConnectionState.SERVICES_DISCOVERED
        _LOGGER.debug("%s: found control service", session.name)

        characteristics = await self._transport.discover_characteristics(
            handle, SERVICE_UUID, [WRITE_CHARACTERISTIC_UUID, NOTIFY_CHARACTERISTIC_UUID]
        )
        if not self._is_current(session):
            return False
        if write_char := characteristics.get(WRITE_CHARACTERISTIC_UUID):
            session.write_characteristic = write_char
            _LOGGER.debug("%s: write characteristic found", session.name)
        if notify_char := characteristics.get(NOTIFY_CHARACTERISTIC_UUID):
            session.notify_characteristic = notify_char
            _LOGGER.debug("%s: notify characteristic found, subscribing...", session.name)
        if session.write_characteristic is None or session.notify_characteristic is None:
            raise ConnectFailed("Control characteristics not found")
        session.state = ConnectionState.CHARACTERISTICS_READY

        await self._transport.subscribe(
            handle,
            session.notify_characteristic,
            functools.partial(self._on_notification, session.device_id),
        )
        if not self._is_current(session):
            return False
        session.notifications_enabled = True
        _LOGGER.debug("%s: notifications enabled", session.name)

        self._begin_initialization(session)
        return True

    def _begin_initialization(self, session: DeviceSession) -> None:
        _LOGGER.debug("%s: ready, initializing...", session.name)
        session.state = ConnectionState.INITIALIZING
        self._known.add(session.device_id)
        self._notify_callbacks()

        # Ordering is enforced by time only; the device gives no per-query ack.
        for index in range(len(protocol.INIT_QUERIES)):
            delay = self._init_start_delay + index * self._init_step_delay
            self._loop.call_later(delay, self._run_init_step, session, index)

    def _run_init_step(self, session: DeviceSession, index: int) -> None:
        if not self._is_current(session):
            _LOGGER.debug("%s: skipping init step %d, session gone", session.name, index)
            return
        command, payload = protocol.INIT_QUERIES[index]
        _LOGGER.debug("%s: init step %d: 0x%04X", session.name, index + 1, command)
        session.send_query(command, payload)
        if index == len(protocol.INIT_QUERIES) - 1:
            session.state = ConnectionState.READY
            _LOGGER.info("%s: initialized, ready for control", session.name)
            self._notify_callbacks()

    async def disconnect(self, device_id: str) -> None:
        """Disconnect a device and discard its session."""
        session = self._registry.get(device_id)
        handle = session.handle if session else self._discovered.get(device_id)
        if handle is None:
            return
        _LOGGER.info("Disconnecting from %s...", self._names.get(device_id, device_id))
        await self._transport.disconnect(handle)
        self._handle_disconnected(device_id, None)

    async def disconnect_all(self) -> None:
        for device_id in self._registry.device_ids:
            await self.disconnect(device_id)

    def _on_transport_disconnected(self, handle: Any, error: str | None) -> None:
        self._handle_disconnected(self._transport.device_id(handle), error)

    def _handle_disconnected(self, device_id: str, error: str | None) -> None:
        session = self._registry.remove(device_id)
        if session is None:
            if error:
                self._set_error(error)
            return
        session.close()
        self._states[device_id] = ConnectionState.DISCONNECTED
        _LOGGER.info("Disconnected from %s", session.name)
        if error:
            self._last_error = error
        self._notify_callbacks()

    def _on_notification(self, device_id: str, data: bytes) -> None:
        session = self._registry.get(device_id)
        if session is None:
            _LOGGER.debug("Notification from %s after disconnect, ignoring", device_id)
            return
        session.handle_notification(data)

    # ----- Writes -----

    def _write(self, session: DeviceSession, frame: bytes) -> None:
        self._spawn(
            self._transport.write(session.handle, session.write_characteristic, frame)
        )

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if (ex := task.exception()) is not None:
            _LOGGER.error("Background BLE operation failed: %s", ex, exc_info=ex)

    # ----- Control -----

    def select_device(self, device_id: str) -> bool:
        """Select the device that untargeted commands apply to."""
        if not self._registry.select(device_id):
            return False
        _LOGGER.info("Selected device: %s", self._names.get(device_id, device_id))
        self._notify_callbacks()
        return True

    def forget_all_devices(self) -> None:
        """Stop auto-reconnecting to any device."""
        self._known.clear()
        self._notify_callbacks()

    def set_brightness(
        self, value: float, device_id: str | None = None, all_devices: bool = False
    ) -> list[str]:
        """Set brightness (0-100) on the target devices. Returns the ids targeted."""
        targets = self._registry.resolve(device_id, all_devices)
        for session in targets:
            session.request_brightness(value)
        return [session.device_id for session in targets]

    def set_color_temperature(
        self, kelvin: int, device_id: str | None = None, all_devices: bool = False
    ) -> list[str]:
        """Set color temperature (2700K-6500K) on the target devices."""
        targets = self._registry.resolve(device_id, all_devices)
        for session in targets:
            session.request_color_temperature(kelvin)
        return [session.device_id for session in targets]

    def turn_on(
        self,
        brightness: float | None = None,
        device_id: str | None = None,
        all_devices: bool = False,
    ) -> list[str]:
        """Turn the target devices on, restoring brightness after the settle delay."""
        targets = self._registry.resolve(device_id, all_devices)
        for session in targets:
            session.turn_on(brightness)
        return [session.device_id for session in targets]

    def turn_off(self, device_id: str | None = None, all_devices: bool = False) -> list[str]:
        """Turn the target devices off."""
        targets = self._registry.resolve(device_id, all_devices)
        for session in targets:
            session.turn_off()
        return [session.device_id for session in targets]

    def query_firmware_version(
        self, device_id: str | None = None, all_devices: bool = False
    ) -> list[str]:
        """Ask the target devices for their firmware version."""
        targets = self._registry.resolve(device_id, all_devices)
        for session in targets:
            session.query_firmware_version()
        return [session.device_id for session in targets]

    async def stop(self) -> None:
        """Stop scanning, disconnect everything and drop callbacks."""
        await self.stop_scanning()
        await self.disconnect_all()
        for task in [*self._connecting.values(), *self._tasks]:
            task.cancel()
        self._callbacks.clear()
