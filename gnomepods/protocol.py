"""Packet constants and data types of the AirPods accessory protocol."""

from __future__ import annotations

import string
import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, ClassVar, Generic, Iterable, Iterator, TypeVar

T = TypeVar("T")

PKT_HANDSHAKE = bytes(
    [0x00, 0x00, 0x04, 0x00, 0x01, 0x00, 0x02, 0x00,
     0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00]
)
PKT_SET_FEATURES = bytes(
    [0x04, 0x00, 0x04, 0x00, 0x4D, 0x00, 0xFF, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00]
)
PKT_REQUEST_NOTIFY = bytes([0x04, 0x00, 0x04, 0x00, 0x0F, 0x00, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF])

HDR_BATTERY_STATE = b"\x04\x00\x04\x00\x04\x00"
HDR_NOISE_CTL = b"\x04\x00\x04\x00\x09\x00\x0d"
HDR_CMD_CTL = b"\x04\x00\x04\x00\x09\x00"

HDR_ACK_HANDSHAKE = b"\x01\x00\x04\x00"
HDR_ACK_FEATURES = b"\x04\x00\x04\x00\x2b"
HDR_METADATA = b"\x04\x00\x04\x00\x1d"
HDR_EAR_DETECTION = b"\x04\x00\x04\x00\x06\x00"


@dataclass(frozen=True, order=True)
class Address:
    """A Bluetooth device address of six octets."""

    octets: bytes

    def __post_init__(self) -> None:
        octets = bytes(self.octets)
        if len(octets) != 6:
            raise ValueError(f"a Bluetooth address has 6 octets, got {len(octets)}")
        object.__setattr__(self, "octets", octets)

    @classmethod
    def parse(cls, text: str) -> Address:
        """Parse the colon-separated form, e.g. ``AA:BB:CC:DD:EE:FF``."""
        parts = text.split(":")
        if len(parts) != 6 or any(
            len(part) != 2 or not all(c in string.hexdigits for c in part) for part in parts
        ):
            raise ValueError(f"invalid Bluetooth address: {text!r}")
        return cls(bytes.fromhex("".join(parts)))

    def __str__(self) -> str:
        return ":".join(f"{octet:02X}" for octet in self.octets)

    def __bytes__(self) -> bytes:
        return self.octets


class _LabelledIntEnum(IntEnum):
    def _label(self) -> str:
        return self.name.capitalize()

    def __str__(self) -> str:
        return self._label()

    def __format__(self, spec: str) -> str:
        return format(self._label(), spec)


class Component(_LabelledIntEnum):
    """Parts of a set of AirPods that report a battery level."""

    HEADPHONE = 0x01
    RIGHT = 0x02
    LEFT = 0x04
    CASE = 0x08


class BatteryStatus(_LabelledIntEnum):
    """Charging state of one component."""

    NORMAL = 0x00
    CHARGING = 0x01
    DISCHARGING = 0x02
    DISCONNECTED = 0x04


class NoiseControlMode(_LabelledIntEnum):
    """Listening modes; the value is the one sent on the wire."""

    OFF = 0x01
    ACTIVE = 0x02
    TRANSPARENCY = 0x03
    ADAPTIVE = 0x04

    def _label(self) -> str:
        return self.to_str()

    def to_str(self) -> str:
        return _NOISE_MODE_NAMES[self]

    def index(self) -> int:
        return int(self) - 1

    @classmethod
    def from_index(cls, index: int) -> NoiseControlMode | None:
        try:
            return cls(index + 1)
        except ValueError:
            return None

    @classmethod
    def parse(cls, text: str) -> NoiseControlMode:
        for mode in cls:
            if mode.to_str() == text:
                return mode
        raise ValueError(f"unknown noise control mode: {text!r}")


_NOISE_MODE_NAMES = {
    NoiseControlMode.OFF: "off",
    NoiseControlMode.ACTIVE: "anc",
    NoiseControlMode.TRANSPARENCY: "transparency",
    NoiseControlMode.ADAPTIVE: "adaptive",
}


class NoiseControlMap(Generic[T]):
    """A small map keyed by noise control mode."""

    def __init__(self, items: Iterable[tuple[NoiseControlMode, T]] = ()) -> None:
        self._slots: list[T | None] = [None] * len(NoiseControlMode)
        for mode, value in items:
            self.insert(mode, value)

    def get(self, mode: NoiseControlMode) -> T | None:
        return self._slots[mode.index()]

    def insert(self, mode: NoiseControlMode, value: T) -> T | None:
        i = mode.index()
        previous, self._slots[i] = self._slots[i], value
        return previous

    def get_or_insert_with(self, mode: NoiseControlMode, factory: Callable[[], T]) -> T:
        i = mode.index()
        if self._slots[i] is None:
            self._slots[i] = factory()
        return self._slots[i]  # type: ignore[return-value]

    def remove(self, mode: NoiseControlMode) -> T | None:
        i = mode.index()
        previous, self._slots[i] = self._slots[i], None
        return previous

    def items(self) -> Iterator[tuple[NoiseControlMode, T]]:
        for mode in NoiseControlMode:
            value = self._slots[mode.index()]
            if value is not None:
                yield mode, value

    def __len__(self) -> int:
        return sum(1 for slot in self._slots if slot is not None)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NoiseControlMap):
            return NotImplemented
        return self._slots == other._slots

    def __repr__(self) -> str:
        inner = ", ".join(f"{mode.to_str()}: {value!r}" for mode, value in self.items())
        return f"NoiseControlMap({{{inner}}})"


@dataclass(frozen=True, order=True)
class FeatureId:
    """Identifier of a configurable device feature."""

    id: int

    MIC_MODE: ClassVar[FeatureId]
    NOISE_CONTROL: ClassVar[FeatureId]
    BUTTON_SEND_MODE: ClassVar[FeatureId]
    SINGLE_CLICK_MODE: ClassVar[FeatureId]
    DOUBLE_CLICK_MODE: ClassVar[FeatureId]
    CLICK_HOLD_MODE: ClassVar[FeatureId]
    DOUBLE_CLICK_INTERVAL: ClassVar[FeatureId]
    CLICK_HOLD_INTERVAL: ClassVar[FeatureId]
    LISTENING_MODE_CONFIGS: ClassVar[FeatureId]
    ONE_BUD_ANC: ClassVar[FeatureId]
    CROWN_ROTATION_DIRECTION: ClassVar[FeatureId]
    AUTO_ANSWER_MODE: ClassVar[FeatureId]
    CALL_MANAGEMENT_CONFIG: ClassVar[FeatureId]
    CHIME_VOLUME: ClassVar[FeatureId]
    VOLUME_INTERVAL: ClassVar[FeatureId]
    VOLUME_SWIPE: ClassVar[FeatureId]
    ADAPTIVE_VOLUME: ClassVar[FeatureId]
    SOFTWARE_MUTE: ClassVar[FeatureId]
    CONVERSATIONAL: ClassVar[FeatureId]
    SSL: ClassVar[FeatureId]
    HEARING_AID_SETTINGS: ClassVar[FeatureId]
    AUTO_ANC_STRENGTH: ClassVar[FeatureId]
    HPS_GAIN_SWIPE: ClassVar[FeatureId]
    HRM: ClassVar[FeatureId]
    IN_CASE_TONE: ClassVar[FeatureId]
    SIRI_MULTITONE: ClassVar[FeatureId]
    HEARING_ASSIST: ClassVar[FeatureId]
    ALLOW_OFF: ClassVar[FeatureId]

    def __post_init__(self) -> None:
        if not 0 <= self.id <= 0xFF:
            raise ValueError(f"feature id out of range: {self.id}")

    @classmethod
    def parse(cls, text: str) -> FeatureId:
        """Look up a known feature by name, ignoring case."""
        try:
            return cls(_FEATURE_BY_NAME[text.lower()])
        except KeyError:
            raise ValueError(f"unknown feature: {text!r}") from None

    def bitpos(self) -> tuple[int, int]:
        return self.id >> 6, 1 << (self.id & 0x3F)

    def try_to_str(self) -> str | None:
        return _FEATURE_NAMES.get(self.id)

    def to_str(self) -> str:
        name = self.try_to_str()
        return name if name is not None else f"{self.id:02x}"

    def __str__(self) -> str:
        return self.to_str()


for _name, _value in (
    ("MIC_MODE", 0x01),
    ("NOISE_CONTROL", 0x0D),
    ("BUTTON_SEND_MODE", 0x05),
    ("SINGLE_CLICK_MODE", 0x14),
    ("DOUBLE_CLICK_MODE", 0x15),
    ("CLICK_HOLD_MODE", 0x16),
    ("DOUBLE_CLICK_INTERVAL", 0x17),
    ("CLICK_HOLD_INTERVAL", 0x18),
    ("LISTENING_MODE_CONFIGS", 0x1A),
    ("ONE_BUD_ANC", 0x1B),
    ("CROWN_ROTATION_DIRECTION", 0x1C),
    ("AUTO_ANSWER_MODE", 0x1E),
    ("CALL_MANAGEMENT_CONFIG", 0x24),
    ("CHIME_VOLUME", 0x1F),
    ("VOLUME_INTERVAL", 0x23),
    ("VOLUME_SWIPE", 0x25),
    ("ADAPTIVE_VOLUME", 0x26),
    ("SOFTWARE_MUTE", 0x27),
    ("CONVERSATIONAL", 0x28),
    ("SSL", 0x29),
    ("HEARING_AID_SETTINGS", 0x2C),
    ("AUTO_ANC_STRENGTH", 0x2E),
    ("HPS_GAIN_SWIPE", 0x2F),
    ("HRM", 0x30),
    ("IN_CASE_TONE", 0x31),
    ("SIRI_MULTITONE", 0x32),
    ("HEARING_ASSIST", 0x33),
    ("ALLOW_OFF", 0x34),
):
    setattr(FeatureId, _name, FeatureId(_value))

KNOWN_FEATURES: tuple[tuple[int, str], ...] = tuple(
    (getattr(FeatureId, name.upper()).id, name)
    for name in (
        "mic_mode", "button_send_mode", "noise_control", "single_click_mode",
        "double_click_mode", "click_hold_mode", "double_click_interval",
        "click_hold_interval", "listening_mode_configs", "one_bud_anc",
        "crown_rotation_direction", "auto_answer_mode", "chime_volume",
        "volume_interval", "call_management_config", "volume_swipe",
        "adaptive_volume", "software_mute", "conversational", "ssl",
        "hearing_aid_settings", "auto_anc_strength", "hps_gain_swipe", "hrm",
        "in_case_tone", "siri_multitone", "hearing_assist", "allow_off",
    )
)
_FEATURE_NAMES = dict(KNOWN_FEATURES)
_FEATURE_BY_NAME = {name: feature_id for feature_id, name in KNOWN_FEATURES}


class FeatureBitmap:
    """Thread-safe set of feature ids, stored as four 64-bit words."""

    def __init__(self) -> None:
        self._words = [0] * 4
        self._lock = threading.Lock()

    def set(self, feature: FeatureId, enabled: bool) -> bool:
        """Set or clear a feature and return whether it was set before."""
        idx, mask = feature.bitpos()
        with self._lock:
            previous = self._words[idx]
            self._words[idx] = previous | mask if enabled else previous & ~mask
        return bool(previous & mask)

    def get(self, feature: FeatureId) -> bool:
        idx, mask = feature.bitpos()
        with self._lock:
            return bool(self._words[idx] & mask)

    def __iter__(self) -> Iterator[FeatureId]:
        with self._lock:
            words = list(self._words)
        for value in range(0x100):
            feature = FeatureId(value)
            idx, mask = feature.bitpos()
            if words[idx] & mask:
                yield feature

    def __repr__(self) -> str:
        return f"FeatureBitmap({{{', '.join(str(f) for f in self)}}})"


@dataclass(frozen=True)
class BatteryState:
    """Battery level and status of a single component."""

    level: int = 0
    status: BatteryStatus = BatteryStatus.DISCONNECTED

    def __post_init__(self) -> None:
        if not 0 <= self.level <= 0xFF:
            raise ValueError(f"battery level out of range: {self.level}")

    def is_charging(self) -> bool:
        return self.status == BatteryStatus.CHARGING

    def is_available(self) -> bool:
        return self.status != BatteryStatus.DISCONNECTED

    def to_json(self) -> dict[str, Any] | None:
        if not self.is_available():
            return None
        return {"level": self.level, "charging": self.is_charging()}

    def __str__(self) -> str:
        return f"{self.level}%({self.status})"


@dataclass(frozen=True)
class BatteryInfo:
    """Battery states of all components of a device."""

    left: BatteryState = field(default_factory=BatteryState)
    right: BatteryState = field(default_factory=BatteryState)
    case: BatteryState = field(default_factory=BatteryState)
    headphone: BatteryState = field(default_factory=BatteryState)

    def split_ref(self) -> tuple[BatteryState, BatteryState]:
        """The two states that stand for left and right playback."""
        if self.headphone.is_available():
            return self.headphone, self.headphone
        return self.left, self.right

    def to_json(self) -> dict[str, Any]:
        return {
            "left": self.left.to_json(),
            "right": self.right.to_json(),
            "case": self.case.to_json(),
            "headphone": self.headphone.to_json(),
        }

    def __str__(self) -> str:
        return f"L:{self.left} R:{self.right} C:{self.case} H:{self.headphone}"


@dataclass(frozen=True)
class EarDetectionStatus:
    """Which buds are currently in an ear."""

    left_in_ear: bool
    right_in_ear: bool

    LEFT: ClassVar[int] = 1 << 0
    RIGHT: ClassVar[int] = 1 << 1
    VALID: ClassVar[int] = 0x80

    @property
    def flags(self) -> int:
        flags = self.VALID
        if self.left_in_ear:
            flags |= self.LEFT
        if self.right_in_ear:
            flags |= self.RIGHT
        return flags

    def is_left_in_ear(self) -> bool:
        return self.left_in_ear

    def is_right_in_ear(self) -> bool:
        return self.right_in_ear

    def to_json(self) -> dict[str, bool]:
        return {"left_in_ear": self.left_in_ear, "right_in_ear": self.right_in_ear}


def build_control_packet(cmd: int, data: bytes) -> bytes:
    """Build a control command packet carrying four bytes of data."""
    payload = bytes(data)
    if len(payload) != 4:
        raise ValueError(f"control data must be 4 bytes, got {len(payload)}")
    return HDR_CMD_CTL + bytes([cmd]) + payload


class FeatureCmd(IntEnum):
    """Operation carried by a feature control packet."""

    QUERY = 0
    ENABLE = 1
    DISABLE = 2

    def build(self, feature: FeatureId | int) -> bytes:
        feature_id = feature.id if isinstance(feature, FeatureId) else int(feature)
        return build_control_packet(feature_id, int(self).to_bytes(4, "little"))

    @classmethod
    def parse(cls, data: bytes) -> tuple[FeatureId, FeatureCmd] | None:
        """Decode a feature control packet, or return None if it is not one."""
        data = bytes(data)
        if not data.startswith(HDR_CMD_CTL):
            return None
        rest = data[len(HDR_CMD_CTL):]
        if len(rest) != 5:
            return None
        try:
            cmd = cls(int.from_bytes(rest[1:], "little"))
        except ValueError:
            return None
        return FeatureId(rest[0]), cmd