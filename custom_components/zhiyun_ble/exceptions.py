"""Exceptions for the Zhiyun BLE integration."""


class ZhiyunError(Exception):
    """Base exception for the Zhiyun BLE integration."""

    pass


class TransportUnavailable(ZhiyunError):
    """Bluetooth radio is off, unauthorized or unsupported."""

    pass


class ConnectFailed(ZhiyunError):
    """Connecting to a device, or discovering its GATT layout, failed."""

    pass


class FrameError(ZhiyunError):
    """Inbound data could not be decoded as a frame."""

    pass


class FrameTooShort(FrameError):
    """Frame is shorter than the fixed header."""

    def __init__(self, length: int) -> None:
        super().__init__(f"Frame too short: {length} bytes")
        self.length = length


class BadMagic(FrameError):
    """Frame does not start with the magic header."""

    def __init__(self, magic: bytes) -> None:
        super().__init__(f"Invalid magic header: {magic.hex(' ')}")
        self.magic = magic


class UnknownCommand(ZhiyunError):
    """Response carries a command id the catalog does not know."""

    def __init__(self, command_id: int) -> None:
        super().__init__(f"Unknown command response: 0x{command_id:04X}")
        self.command_id = command_id
