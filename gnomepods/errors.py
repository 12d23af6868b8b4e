"""Exception hierarchy for the AirPods service."""

from __future__ import annotations

from typing import Any


class AirPodsError(Exception):
    """Base class for every error raised by the service."""

    default_message = "AirPods service error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message if message is not None else self.default_message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class DeviceNotFoundError(AirPodsError):
    """No managed device has the requested address."""

    def __init__(self, address: Any) -> None:
        self.address = address
        super().__init__(f"Device not found: {address}")


class DeviceNotConnectedError(AirPodsError):
    default_message = "Device not connected"


class DeviceNotPairedError(AirPodsError):
    default_message = "Device not paired"


class InvalidPacketError(AirPodsError):
    """A packet received from the device could not be understood."""

    def __init__(self, detail: str = "Invalid packet format") -> None:
        self.detail = detail
        super().__init__(f"Invalid packet: {detail}")


class WrongPacketTypeError(InvalidPacketError):
    def __init__(self, expected: str) -> None:
        self.expected = expected
        super().__init__(f"Not a {expected} packet")


class PacketTooShortError(InvalidPacketError):
    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Packet too short: expected at least {expected} bytes, got {actual}"
        )


class InvalidBatteryCountError(InvalidPacketError):
    def __init__(self, count: int) -> None:
        self.count = count
        super().__init__(f"Invalid battery count: {count} (must be 0-3)")


class PacketSizeMismatchError(InvalidPacketError):
    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Packet size mismatch: expected {expected} bytes, got {actual} bytes"
        )


class UnknownComponentTypeError(InvalidPacketError):
    def __init__(self, component_type: int) -> None:
        self.component_type = component_type
        super().__init__(f"Unknown component type: 0x{component_type:02x}")


class UnknownNoiseModeError(InvalidPacketError):
    def __init__(self, mode: int) -> None:
        self.mode = mode
        super().__init__(f"Unknown noise control mode: 0x{mode:02x}")


class InvalidFormatError(InvalidPacketError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid packet format: {reason}")


class FeatureNotSupportedError(AirPodsError):
    def __init__(self, feature: str) -> None:
        self.feature = feature
        super().__init__(f"Feature not supported: {feature}")


class ConnectionLostError(AirPodsError):
    default_message = "Connection lost"


class ConnectionClosedError(AirPodsError):
    default_message = "Connection closed"


class RequestTimeoutError(AirPodsError):
    default_message = "Request timeout"


class ConfigDirNotFoundError(AirPodsError):
    default_message = "Could not determine config directory"


class ConfigParseError(AirPodsError):
    """The configuration file is not valid TOML for the expected layout."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"TOML parsing error: {detail}")


class ManagerShutdownError(AirPodsError):
    default_message = "Manager has been shut down"


class AlreadyConnectingError(AirPodsError):
    default_message = "Already connecting to device"


class AdapterNotFoundError(AirPodsError):
    default_message = "Adapter not found"


class AdapterNotAvailableError(AirPodsError):
    default_message = "Adapter not available"


class BatteryStudyError(AirPodsError):
    """The battery study database failed."""

    default_detail = "database failure"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail if detail is not None else self.default_detail
        super().__init__(f"Battery study error: {self.detail}")


class StudyNotFoundError(BatteryStudyError):
    default_detail = "Device study not found"


class DataDirectoryNotFoundError(BatteryStudyError):
    default_detail = "Could not find local data directory"