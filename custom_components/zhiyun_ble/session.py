"""Per-device session for Zhiyun BLE lights.

A session exists for exactly as long as its device is connected. It owns
the GATT characteristic handles, the frame sequence counter, the cached
device state and the debounce timers for brightness and color
temperature.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable

from .const import (
    DEBOUNCE_DELAY,
    DEFAULT_KELVIN,
    DEFAULT_TURN_ON_BRIGHTNESS,
    SEQUENCE_MASK,
    SETTLE_DELAY,
    Command,
    ConnectionState,
)
from .exceptions import FrameError, UnknownCommand
from . import protocol

_LOGGER = logging.getLogger(__name__)


@dataclass
class DeviceState:
    """Cached state of one light, as last written or reported."""

    is_on: bool = False
    brightness: float = 0.0  # 0-100
    color_temperature: int = DEFAULT_KELVIN  # Kelvin
    firmware_version: str = ""
    device_name: str = ""
    model_code: str = ""
    model_name: str = ""


class DeviceSession:
    """Runtime state of one connected light."""

    def __init__(
        self,
        device_id: str,
        handle: Any,
        writer: Callable[["DeviceSession", bytes], None],
        loop: asyncio.AbstractEventLoop,
        debounce_delay: float = DEBOUNCE_DELAY,
        settle_delay: float = SETTLE_DELAY,
        on_update: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            device_id: Stable identity of the device
            handle: Transport handle for the peripheral
            writer: Called with every frame that should go out on the wire
            loop: Event loop owning this session's timers
            debounce_delay: Quiet period before a pending value is flushed
            settle_delay: Pause between waking the light and setting brightness
            on_update: Called whenever the cached state changes
        """
        self.device_id = device_id
        self.handle = handle
        self.state = ConnectionState.CONNECTING
        self.device_state = DeviceState()

        self.write_characteristic: Any = None
        self.notify_characteristic: Any = None
        self.notifications_enabled = False

        self._writer = writer
        self._loop = loop
        self._debounce_delay = debounce_delay
        self._settle_delay = settle_delay
        self._on_update = on_update

        self._sequence = 0
        self._pending_brightness: float | None = None
        self._pending_color_temperature: int | None = None
        self._needs_wake = False
        self._last_brightness: float | None = None

        self._brightness_timer: asyncio.TimerHandle | None = None
        self._color_temperature_timer: asyncio.TimerHandle | None = None
        self._delayed: set[asyncio.TimerHandle] = set()
        self._closed = False

    def __repr__(self) -> str:
        return f"<DeviceSession {self.name} state={self.state.name}>"

    @property
    def name(self) -> str:
        """Return a readable name for log lines."""
        return self.device_state.device_name or self.device_id

    @property
    def closed(self) -> bool:
        """Return True once the session has been torn down."""
        return self._closed

    @property
    def is_write_ready(self) -> bool:
        """Return True if frames can be written."""
        return self.write_characteristic is not None and not self._closed

    @property
    def is_ready(self) -> bool:
        """Return True when both characteristics are known and notifying."""
        return (
            self.is_write_ready
            and self.notify_characteristic is not None
            and self.notifications_enabled
        )

    @property
    def sequence(self) -> int:
        """Return the sequence number the next frame will carry."""
        return self._sequence

    @property
    def last_brightness(self) -> float | None:
        """Return the last non-zero brightness that was flushed."""
        return self._last_brightness

    @property
    def needs_wake(self) -> bool:
        """Return True if the next brightness flush must power the light on first."""
        return self._needs_wake

    @property
    def pending_brightness(self) -> float | None:
        """Return the brightness waiting for its debounce timer, if any."""
        return self._pending_brightness

    @property
    def pending_color_temperature(self) -> int | None:
        """Return the color temperature waiting for its debounce timer, if any."""
        return self._pending_color_temperature

    def next_sequence(self) -> int:
        """Return the current sequence number and advance it, wrapping at 16 bits."""
        seq = self._sequence
        self._sequence = (seq + 1) & SEQUENCE_MASK
        return seq

    # ----- Frame output -----

    def send(self, command: Command, payload: bytes = b"") -> bytes | None:
        """Encode and write one frame. Returns the frame, or None if not sent."""
        if self._closed:
            _LOGGER.debug("%s: session closed, dropping 0x%04X", self.name, command)
            return None
        if self.write_characteristic is None:
            _LOGGER.debug("%s: no write characteristic yet, dropping 0x%04X", self.name, command)
            return None

        frame = protocol.encode(command, payload, self.next_sequence())
        _LOGGER.debug(
            "Sending to %s: %s", self.name, protocol.format_bytes_hex(frame)
        )
        self._writer(self, frame)
        return frame

    def send_query(self, command: Command, payload: bytes = b"") -> bytes | None:
        """Send a query; any reply arrives as a notification."""
        return self.send(command, payload)

    def query_firmware_version(self) -> bytes | None:
        """Ask the device for its firmware version."""
        _LOGGER.debug("%s: querying firmware version", self.name)
        return self.send_query(Command.FIRMWARE_VERSION)

    # ----- Timers -----

    def call_later(self, delay: float, func: Callable[..., None], *args: Any) -> asyncio.TimerHandle:
        """Run func after delay unless the session is closed first."""
        handle: asyncio.TimerHandle | None = None

        def _run() -> None:
            self._delayed.discard(handle)
            if self._closed:
                return
            func(*args)

        handle = self._loop.call_later(delay, _run)
        self._delayed.add(handle)
        return handle

    def close(self) -> None:
        """Cancel every outstanding timer and refuse further writes."""
        self._closed = True
        self.state = ConnectionState.DISCONNECTED
        for timer in (self._brightness_timer, self._color_temperature_timer, *self._delayed):
            if timer is not None:
                timer.cancel()
        self._brightness_timer = None
        self._color_temperature_timer = None
        self._delayed.clear()
        self._pending_brightness = None
        self._pending_color_temperature = None
        self._needs_wake = False

    # ----- Commands -----

    def request_brightness(self, value: float) -> float:
        """Request a brightness (0-100); the last value in a quiet period is sent.

        Non-finite values are ignored and the current brightness is returned.
        """
        if not math.isfinite(value):
            _LOGGER.debug("%s: ignoring non-finite brightness %s", self.name, value)
            return self.device_state.brightness
        value = protocol.clamp_brightness(value)

        # Must run before the optimistic update below
        if value > 0 and not self.device_state.is_on:
            self._needs_wake = True
        elif value == 0:
            self._needs_wake = False

        self.device_state.brightness = value
        self.device_state.is_on = value > 0

        self._pending_brightness = value
        if self._brightness_timer:
            self._brightness_timer.cancel()
        self._brightness_timer = self._loop.call_later(
            self._debounce_delay, self._flush_brightness
        )
        self._notify_update()
        return value

    def request_color_temperature(self, kelvin: int) -> int:
        """Request a color temperature; the last value in a quiet period is sent."""
        kelvin = protocol.clamp_kelvin(kelvin)
        self.device_state.color_temperature = kelvin

        self._pending_color_temperature = kelvin
        if self._color_temperature_timer:
            self._color_temperature_timer.cancel()
        self._color_temperature_timer = self._loop.call_later(
            self._debounce_delay, self._flush_color_temperature
        )
        self._notify_update()
        return kelvin

    def turn_on(self, brightness: float | None = None) -> None:
        """Power the light on, then restore a brightness after the settle delay."""
        if brightness is not None and math.isfinite(brightness):
            target = brightness
        elif self._last_brightness is not None:
            target = self._last_brightness
        else:
            target = DEFAULT_TURN_ON_BRIGHTNESS

        _LOGGER.debug("%s: turning light ON (brightness %s%%)", self.name, target)
        if self.send(Command.POWER_STATE, protocol.power_payload(True)) is None:
            return
        self.device_state.is_on = True
        self._notify_update()
        self.call_later(self._settle_delay, self.request_brightness, target)

    def turn_off(self) -> None:
        """Power the light off immediately."""
        _LOGGER.debug("%s: turning light OFF", self.name)
        if self.send(Command.POWER_STATE, protocol.power_payload(False)) is None:
            return
        self.device_state.is_on = False
        self._notify_update()

    def _flush_brightness(self) -> None:
        self._brightness_timer = None
        value = self._pending_brightness
        self._pending_brightness = None
        if value is None or self._closed:
            return

        if value == 0:
            _LOGGER.debug("%s: brightness 0%% - turning OFF", self.name)
            self._needs_wake = False
            if self.send(Command.POWER_STATE, protocol.power_payload(False)) is None:
                return
            self.device_state.is_on = False
            self._notify_update()
            return

        self._last_brightness = value
        wake = self._needs_wake
        self._needs_wake = False

        if wake:
            _LOGGER.debug("%s: waking device from sleep", self.name)
            self.send(Command.POWER_STATE, protocol.power_payload(True))
            self.call_later(self._settle_delay, self._send_brightness, value)
        else:
            self._send_brightness(value)

    def _send_brightness(self, value: float) -> None:
        _LOGGER.debug("%s: setting brightness to %s%%", self.name, value)
        if self.send(Command.SET_BRIGHTNESS, protocol.brightness_payload(value)) is None:
            return
        self.device_state.is_on = True
        self._notify_update()

    def _flush_color_temperature(self) -> None:
        self._color_temperature_timer = None
        kelvin = self._pending_color_temperature
        self._pending_color_temperature = None
        if kelvin is None or self._closed:
            return
        _LOGGER.debug("%s: setting color temperature to %dK", self.name, kelvin)
        self.send(
            Command.SET_COLOR_TEMPERATURE, protocol.color_temperature_payload(kelvin)
        )

    # ----- Responses -----

    def handle_notification(self, data: bytes) -> None:
        """Decode a notification and fold it into the cached state."""
        _LOGGER.debug(
            "Notification from %s (raw %d bytes): %s",
            self.name, len(data), protocol.format_bytes_hex(data),
        )
        try:
            command_id, payload = protocol.decode(data)
        except FrameError as ex:
            _LOGGER.debug("%s: dropping notification: %s", self.name, ex)
            return
        if not protocol.verify_crc(data):
            _LOGGER.debug("%s: CRC mismatch in notification, processing anyway", self.name)

        _LOGGER.debug("%s: response cmd=0x%04X", self.name, command_id)
        try:
            updates = protocol.parse_response(command_id, payload)
        except UnknownCommand as ex:
            _LOGGER.debug("%s: %s", self.name, ex)
            return

        if not updates:
            return
        for key, value in updates.items():
            setattr(self.device_state, key, value)
        _LOGGER.debug("%s: state updated from response: %s", self.name, updates)
        self._notify_update()

    def _notify_update(self) -> None:
        if self._on_update is not None:
            self._on_update()
