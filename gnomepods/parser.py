"""Parsers for packets received from AirPods."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import (
    InvalidBatteryCountError,
    PacketSizeMismatchError,
    PacketTooShortError,
    UnknownNoiseModeError,
    WrongPacketTypeError,
)
from .protocol import (
    HDR_BATTERY_STATE,
    HDR_EAR_DETECTION,
    HDR_METADATA,
    BatteryInfo,
    BatteryState,
    BatteryStatus,
    Component,
    EarDetectionStatus,
    NoiseControlMode,
)

log = logging.getLogger(__name__)

_COMPONENT_FIELDS = {
    Component.LEFT: "left",
    Component.RIGHT: "right",
    Component.CASE: "case",
    Component.HEADPHONE: "headphone",
}

# Characters with the Unicode White_Space property.
_WHITESPACE = (
    "\t\n\x0b\x0c\r \x85\xa0\u1680"
    + "".join(chr(c) for c in range(0x2000, 0x200B))
    + "\u2028\u2029\u202f\u205f\u3000"
)


def parse_battery_status(data: bytes) -> BatteryInfo:
    """Decode a battery status packet covering up to three components."""
    data = bytes(data)
    if not data.startswith(HDR_BATTERY_STATE):
        raise WrongPacketTypeError("battery status")
    if len(data) < 7:
        raise PacketTooShortError(7, len(data))

    battery_count = data[6]
    expected_length = 7 + 5 * battery_count
    log.debug("Battery packet: %s", data.hex())

    if battery_count > 3:
        raise InvalidBatteryCountError(battery_count)
    if len(data) != expected_length:
        raise PacketSizeMismatchError(expected_length, len(data))

    states: dict[str, BatteryState] = {}
    for i in range(battery_count):
        offset = 7 + 5 * i
        comp_id, _pad1, level, status, _pad2 = data[offset:offset + 5]
        try:
            component = Component(comp_id)
        except ValueError:
            log.warning("Unknown component type 0x%02x", comp_id)
            continue
        try:
            bat_status = BatteryStatus(status)
        except ValueError:
            log.warning(
                "Unknown battery status 0x%02x for component %s, treating as Normal",
                status,
                component,
            )
            bat_status = BatteryStatus.NORMAL

        log.debug("Parsed component: %s = %d%% (%s)", component, level, bat_status)
        if bat_status != BatteryStatus.DISCONNECTED:
            states[_COMPONENT_FIELDS[component]] = BatteryState(level, bat_status)

    info = BatteryInfo(**states)
    log.debug("Battery parsed - %s", info)
    return info


def parse_noise_mode(data: bytes) -> NoiseControlMode:
    """Decode the noise control mode carried in byte 7."""
    data = bytes(data)
    if len(data) < 8:
        raise PacketTooShortError(8, len(data))
    try:
        return NoiseControlMode(data[7])
    except ValueError:
        raise UnknownNoiseModeError(data[7]) from None


def parse_ear_detection(data: bytes) -> EarDetectionStatus:
    """Decode an ear detection packet; a byte of 1 means the bud is out."""
    data = bytes(data)
    if not data.startswith(HDR_EAR_DETECTION):
        raise WrongPacketTypeError("ear detection")
    if len(data) < 8:
        raise PacketTooShortError(8, len(data))
    left_out = data[6] == 0x01
    right_out = data[7] == 0x01
    return EarDetectionStatus(not left_out, not right_out)


@dataclass
class Metadata:
    """Information extracted from a metadata packet."""

    name_candidate: str | None = None


def parse_metadata(data: bytes) -> Metadata:
    """Decode a metadata packet, looking for text that may be the device name."""
    data = bytes(data)
    if not data.startswith(HDR_METADATA):
        raise WrongPacketTypeError("metadata")
    if len(data) < 20:
        raise PacketTooShortError(20, len(data))

    payload = data[6:]
    for i in range(max(len(payload) - 5, 0)):
        chunk = payload[i:i + 10]
        try:
            text = chunk.decode("utf-8")
        except UnicodeDecodeError:
            continue
        trimmed = text.strip(_WHITESPACE)
        if any(c.isalpha() for c in text) and len(trimmed.encode("utf-8")) > 2:
            return Metadata(trimmed)
    return Metadata()