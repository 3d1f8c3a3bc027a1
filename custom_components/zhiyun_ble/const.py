"""Constants for the Zhiyun BLE integration."""
from enum import IntEnum
from typing import Final

DOMAIN: Final = "zhiyun_ble"

# BLE UUIDs
SERVICE_UUID: Final = "0000fee9-0000-1000-8000-00805f9b34fb"
WRITE_CHARACTERISTIC_UUID: Final = "d44bc439-abfd-45a2-b575-925416129600"
NOTIFY_CHARACTERISTIC_UUID: Final = "d44bc439-abfd-45a2-b575-925416129601"

# Frame layout
MAGIC_HEADER: Final = bytes([0x24, 0x3C])
DIRECTION_REQUEST: Final = bytes([0x00, 0x01])
DIRECTION_RESPONSE: Final = bytes([0x01, 0x00])
SUB_COMMAND_CONTROL: Final = bytes([0x03, 0x80])
HEADER_LENGTH: Final = 10  # magic + length + direction + seq + command
CRC_LENGTH: Final = 2
SEQUENCE_MASK: Final = 0xFFFF

# Limits
MIN_BRIGHTNESS: Final = 0.0
MAX_BRIGHTNESS: Final = 100.0
MIN_KELVIN: Final = 2700
MAX_KELVIN: Final = 6500
DEFAULT_KELVIN: Final = 5600
DEFAULT_TURN_ON_BRIGHTNESS: Final = 50.0

# Timings (seconds)
DEBOUNCE_DELAY: Final = 0.05
SETTLE_DELAY: Final = 0.1
INIT_START_DELAY: Final = 0.3
INIT_STEP_DELAY: Final = 0.1

# Known device storage
KNOWN_DEVICES_FILE: Final = "zhiyun_ble_known_devices.json"
KNOWN_DEVICES_KEY: Final = "known_devices"

# hass.data[DOMAIN] keys
DATA_CONTROLLER: Final = "controller"
DATA_TRANSPORT: Final = "transport"
DATA_ENTRIES: Final = "entries"


class Command(IntEnum):
    """Command identifiers, sent little-endian on the wire."""

    SET_BRIGHTNESS = 0x1001
    SET_COLOR_TEMPERATURE = 0x1002
    POWER_STATE = 0x1008
    QUERY_BRIGHTNESS = 0x1009     # must be sent before the first brightness set
    QUERY_DEVICE = 0x1201
    DEVICE_INFO = 0x2005
    DEVICE_NAME = 0x2003
    DEVICE_STATUS = 0x2001
    READ_DEVICE_STATE = 0x0006    # required during initialization
    FIRMWARE_VERSION = 0x8001


class ConnectionState(IntEnum):
    """Connection lifecycle of a single device."""

    DISCOVERED = 0
    CONNECTING = 1
    SERVICES_DISCOVERED = 2
    CHARACTERISTICS_READY = 3
    INITIALIZING = 4
    READY = 5
    DISCONNECTED = 6


# Advertised name prefix -> model name.
# Order matters: the first prefix that matches a name wins.
SUPPORTED_MODELS: Final = {
    # MOLUS COB series
    "PL103": "MOLUS G60",
    "PL105": "MOLUS X100",
    "PL107": "MOLUS G100",
    "PL109": "MOLUS G200",
    "PLG105": "MOLUS G300",
    "PLG106": "MOLUS G200D",
    # MOLUS B series (daylight)
    "PLB101": "MOLUS B100D",
    "PLB102": "MOLUS Z1",
    "PLB103": "MOLUS B200D",
    "PLB104": "MOLUS Z2",
    "PLB105": "MOLUS B300D",
    "PLB106": "MOLUS Z3",
    "PLB107": "MOLUS B500D",
    "PLB108": "MOLUS Z5",
    # MOLUS B series (bi-color)
    "PL0102": "MOLUS B100",
    "PL0104": "MOLUS B200",
    "PL0106": "MOLUS B300",
    "PL0108": "MOLUS B500",
    # MOLUS X / RGB series
    "PLX104": "MOLUS X60RGB",
    "PLX105": "MOLUS X60",
    "PLX110": "MOLUS X100RGB",
    "PLX113": "MOLUS X200RGB",
    "PLX114": "MOLUS X200",
    # FIVERAY series
    "PLM103": "FIVERAY M20C",
    "PLM110": "FIVERAY M60 Ultra",
    # CINEPEER series
    "PL113": "CINEPEER C100",
    "PLX108": "CINEPEER CX50",
    "PLX109": "CINEPEER CX50RGB",
}

UNKNOWN_MODEL_NAME: Final = "Unknown Model"
MANUFACTURER: Final = "Zhiyun"
