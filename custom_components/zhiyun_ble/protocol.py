"""Protocol layer for Zhiyun BLE lights.

This module handles:
- Frame layer (magic header, length, direction, sequence, CRC)
- Command building (brightness, color temperature, power, queries)
- Response parsing
- Model detection from the advertised name

Everything in here is pure: no I/O, no timers, no device state.
"""
from __future__ import annotations

import logging
import struct

from .const import (
    CRC_LENGTH,
    DIRECTION_REQUEST,
    HEADER_LENGTH,
    MAGIC_HEADER,
    MAX_BRIGHTNESS,
    MAX_KELVIN,
    MIN_BRIGHTNESS,
    MIN_KELVIN,
    SEQUENCE_MASK,
    SUB_COMMAND_CONTROL,
    SUPPORTED_MODELS,
    UNKNOWN_MODEL_NAME,
    Command,
)
from .exceptions import BadMagic, FrameTooShort, UnknownCommand

_LOGGER = logging.getLogger(__name__)


# =============================================================================
# CHECKSUM
# =============================================================================

def crc16_xmodem(data: bytes) -> int:
    """Calculate CRC-16/XMODEM (poly 0x1021, init 0x0000, MSB first)."""
    crc = 0x0000
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


# =============================================================================
# FRAME LAYER
# =============================================================================

def encode(command: int, payload: bytes, sequence: int) -> bytes:
    """
    Build a complete request frame.

    Frame format:
      - Bytes 0-1: Magic header (0x24 0x3C)
      - Bytes 2-3: Content length, little-endian
                   (direction + sequence + command + payload, no CRC)
      - Bytes 4-5: Direction (0x00 0x01 = request)
      - Bytes 6-7: Sequence number, little-endian
      - Bytes 8-9: Command id, little-endian
      - Bytes 10..: Payload
      - Last 2 bytes: CRC-16/XMODEM over bytes 4.. (low byte first)

    The CRC byte order is the reverse of what XMODEM normally uses.
    Deployed firmware expects it this way.
    """
    payload = bytes(payload)
    content_length = 6 + len(payload)

    frame = bytearray(MAGIC_HEADER)
    frame += struct.pack("<H", content_length)
    frame += DIRECTION_REQUEST
    frame += struct.pack("<HH", sequence & SEQUENCE_MASK, int(command) & 0xFFFF)
    frame += payload

    crc = crc16_xmodem(frame[4:])
    frame += struct.pack("<H", crc)
    return bytes(frame)


def decode(data: bytes) -> tuple[int, bytes]:
    """
    Extract (command_id, payload) from an inbound frame.

    The CRC is not checked; a connected device is trusted.

    Raises:
        FrameTooShort: fewer than 10 bytes
        BadMagic: first two bytes are not the magic header
    """
    data = bytes(data)
    if len(data) < HEADER_LENGTH:
        raise FrameTooShort(len(data))
    if data[0:2] != MAGIC_HEADER:
        raise BadMagic(data[0:2])

    command_id = data[8] | (data[9] << 8)
    # 10 or 11 byte frames slice to an empty payload
    return command_id, data[HEADER_LENGTH:-CRC_LENGTH]


def verify_crc(data: bytes) -> bool:
    """Return True if the trailing CRC of a frame matches its content."""
    data = bytes(data)
    if len(data) < HEADER_LENGTH + CRC_LENGTH:
        return False
    expected = data[-2] | (data[-1] << 8)
    return crc16_xmodem(data[4:-CRC_LENGTH]) == expected


def format_bytes_hex(data: bytes) -> str:
    """Format bytes as space-separated 0xNN for logging."""
    return " ".join(f"0x{b:02X}" for b in data)


# =============================================================================
# VALUE HELPERS
# =============================================================================

def clamp_brightness(value: float) -> float:
    """Clamp a brightness percentage to 0-100."""
    return max(MIN_BRIGHTNESS, min(MAX_BRIGHTNESS, float(value)))


def clamp_kelvin(value: int) -> int:
    """Clamp a color temperature to the supported Kelvin range."""
    return max(MIN_KELVIN, min(MAX_KELVIN, int(value)))


# =============================================================================
# COMMAND PAYLOADS
# =============================================================================

def brightness_payload(value: float) -> bytes:
    """Sub-command + flag 0x01 + float32 LE percent (7 bytes)."""
    return SUB_COMMAND_CONTROL + b"\x01" + struct.pack("<f", clamp_brightness(value))


def color_temperature_payload(kelvin: int) -> bytes:
    """Sub-command + flag 0x01 + uint16 LE Kelvin (5 bytes)."""
    return SUB_COMMAND_CONTROL + b"\x01" + struct.pack("<H", clamp_kelvin(kelvin))


def power_payload(turn_on: bool) -> bytes:
    """Sub-command + 0x01 + state (0x01 = on, 0x00 = off)."""
    return SUB_COMMAND_CONTROL + bytes([0x01, 0x01 if turn_on else 0x00])


def query_payload() -> bytes:
    """Sub-command + 0x00 0x00, used by the state and brightness queries."""
    return SUB_COMMAND_CONTROL + b"\x00\x00"


def color_temperature_query_payload() -> bytes:
    """
    Payload for the color temperature query.

    The query reuses SET_COLOR_TEMPERATURE with three zero bytes after the
    sub-command. Whether the device treats this as a read because of the
    0x00 flag or because of the length is unverified on hardware; the byte
    sequence matches what the vendor app sends.
    """
    return SUB_COMMAND_CONTROL + b"\x00\x00\x00"


# Queries issued during initialization, in order.
INIT_QUERIES: tuple[tuple[Command, bytes], ...] = (
    (Command.DEVICE_INFO, b""),
    (Command.DEVICE_NAME, b""),
    (Command.FIRMWARE_VERSION, b""),
    (Command.READ_DEVICE_STATE, query_payload()),
    (Command.QUERY_BRIGHTNESS, query_payload()),
    (Command.SET_COLOR_TEMPERATURE, color_temperature_query_payload()),
)


def build_brightness_command(value: float, sequence: int) -> bytes:
    """Build a Set-Brightness frame."""
    return encode(Command.SET_BRIGHTNESS, brightness_payload(value), sequence)


def build_color_temperature_command(kelvin: int, sequence: int) -> bytes:
    """Build a Set-Color-Temperature frame."""
    return encode(Command.SET_COLOR_TEMPERATURE, color_temperature_payload(kelvin), sequence)


def build_power_command(turn_on: bool, sequence: int) -> bytes:
    """Build a Power(on/off) frame."""
    return encode(Command.POWER_STATE, power_payload(turn_on), sequence)


# =============================================================================
# RESPONSE PARSING
# =============================================================================

def parse_response(command_id: int, payload: bytes) -> dict:
    """
    Translate a decoded response into device state updates.

    Returns a dict with any of the keys:
        - brightness: float (0-100, clamped)
        - is_on: bool
        - color_temperature: int (Kelvin, clamped)
        - firmware_version: str

    Known commands with a payload too short to carry a value return an
    empty dict, as do informational replies (device info, status).

    Raises:
        UnknownCommand: command id not in the catalog
    """
    payload = bytes(payload)

    if command_id == Command.SET_BRIGHTNESS:
        if len(payload) < 7:
            return {}
        (brightness,) = struct.unpack_from("<f", payload, 3)
        if brightness != brightness:  # NaN
            return {}
        brightness = clamp_brightness(brightness)
        return {"brightness": brightness, "is_on": brightness > 0}

    if command_id == Command.SET_COLOR_TEMPERATURE:
        if len(payload) < 5:
            return {}
        (kelvin,) = struct.unpack_from("<H", payload, 3)
        return {"color_temperature": clamp_kelvin(kelvin)}

    if command_id == Command.POWER_STATE:
        if len(payload) < 3:
            return {}
        return {"is_on": payload[2] == 0x01}

    if command_id == Command.FIRMWARE_VERSION:
        version = payload.decode("utf-8", errors="replace").strip("\x00").strip()
        return {"firmware_version": version}

    if command_id in (
        Command.QUERY_DEVICE,
        Command.DEVICE_STATUS,
        Command.DEVICE_INFO,
        Command.DEVICE_NAME,
        Command.QUERY_BRIGHTNESS,
        Command.READ_DEVICE_STATE,
    ):
        _LOGGER.debug(
            "Informational response 0x%04X: %s", command_id, format_bytes_hex(payload)
        )
        return {}

    raise UnknownCommand(command_id)


# =============================================================================
# MODEL DETECTION
# =============================================================================

def match_model(name: str | None) -> tuple[str, str] | None:
    """
    Match an advertised name against the supported model prefixes.

    Examples:
        "PL105_1A2B" → ("PL105", "MOLUS X100")
        "PLX110-ABCD" → ("PLX110", "MOLUS X100RGB")
        "LEDnetWF07" → None

    Returns (model_code, model_name), or None when unsupported.
    """
    if not name:
        return None
    for prefix, model_name in SUPPORTED_MODELS.items():
        if name.startswith(prefix):
            return prefix, model_name or UNKNOWN_MODEL_NAME
    return None


def is_supported_device(name: str | None) -> bool:
    """Return True if the advertised name belongs to a supported model."""
    return match_model(name) is not None
