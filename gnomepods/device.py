"""State of one AirPods device and the packet channel that keeps it current."""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
import weakref
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from . import l2cap, parser
from .battery_study import BatteryStudy
from .battery_tracker import BatteryTracker
from .errors import AirPodsError, DeviceNotConnectedError, InvalidPacketError, RequestTimeoutError
from .events import AirPodsEvent, EventBus, EventKind
from .protocol import (
    HDR_ACK_FEATURES,
    HDR_ACK_HANDSHAKE,
    HDR_BATTERY_STATE,
    HDR_EAR_DETECTION,
    HDR_METADATA,
    HDR_NOISE_CTL,
    PKT_HANDSHAKE,
    PKT_REQUEST_NOTIFY,
    PKT_SET_FEATURES,
    Address,
    BatteryInfo,
    EarDetectionStatus,
    FeatureBitmap,
    FeatureCmd,
    FeatureId,
    NoiseControlMode,
    build_control_packet,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

Connector = Callable[[l2cap.Hooks, Address], Awaitable[Any]]

_ACK_TIMEOUT = 5.0
_INITIAL_RETRY_DELAY = 1.0
_RETRY_SCHEDULE = (2.0, 3.0, 5.0, 10.0)
_DEFAULT_DRAIN_RATE = 16.9  # percent per hour
_SAVE_INTERVAL_MINUTES = 5
_NOISE_CONTROL_CMD = 0x0D
_FEATURE_ENABLE = 1
_FEATURE_DISABLE = 2
_DEFAULT_NOISE_MODE = NoiseControlMode(0x01)


class UpdateKind(enum.Enum):
    """How a stored value changed."""

    NOOP = "noop"
    INSERTED = "inserted"
    DELETED = "deleted"
    UPDATED = "updated"


@dataclass(frozen=True)
class UpdateOp(Generic[T]):
    """The outcome of replacing a stored value.

    ``value`` holds the removed value for DELETED and a changed value for UPDATED.
    """

    kind: UpdateKind
    value: T | None = None

    @classmethod
    def between(cls, previous: T | None, new: T | None) -> UpdateOp[T]:
        if previous is None:
            return cls(UpdateKind.NOOP) if new is None else cls(UpdateKind.INSERTED)
        if new is None:
            return cls(UpdateKind.DELETED, previous)
        if previous == new:
            return cls(UpdateKind.NOOP)
        return cls(UpdateKind.UPDATED, new)

    def is_updated(self) -> bool:
        return self.kind in (UpdateKind.INSERTED, UpdateKind.UPDATED)


@dataclass
class _ConnectionState:
    connection: Any
    tasks: list[asyncio.Task] = field(default_factory=list)

    def close(self) -> None:
        for task in self.tasks:
            task.cancel()
        self.connection.close()


def _feature_code(feature: FeatureId) -> int:
    index, mask = feature.bitpos()
    return index * 64 + mask.bit_length() - 1


def _settle(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


async def _wait_for_ack(future: asyncio.Future) -> None:
    try:
        await asyncio.wait_for(asyncio.shield(future), _ACK_TIMEOUT)
    except TimeoutError:
        raise RequestTimeoutError() from None


def _has_battery(weak: weakref.ref[AirPods]) -> bool:
    device = weak()
    return device is not None and device.battery_info is not None


async def _retry_notifications(
    weak: weakref.ref[AirPods], address: Address, sender: Any
) -> None:
    await asyncio.sleep(_INITIAL_RETRY_DELAY)
    for attempt, delay in enumerate(_RETRY_SCHEDULE):
        if _has_battery(weak):
            log.info("%s: Battery status established after %d retries!", address, attempt)
            return
        log.warning(
            "%s: [Retry %d] No battery status received after notification request, "
            "retrying in %.0fs...",
            address,
            attempt,
            delay,
        )
        try:
            await sender.send(PKT_REQUEST_NOTIFY)
        except AirPodsError as exc:
            log.debug("%s: notification request failed: %s", address, exc)
        await asyncio.sleep(delay)


async def _packet_loop(
    weak: weakref.ref[AirPods], address: Address, receiver: Any, event_bus: EventBus
) -> AirPodsError | None:
    while True:
        try:
            packet = await receiver.recv()
        except AirPodsError as exc:
            device = weak()
            if device is not None:
                await device._notify_disconnected(event_bus)
            else:
                log.warning("%s: Connection closed: %s", address, exc)
            return exc
        device = weak()
        if device is None:
            log.warning("%s: Airpod instance was dropped", address)
            return None
        device.process_packet(packet, event_bus)
        del device


class AirPods:
    """A known AirPods device: its last reported state and its control channel."""

    def __init__(
        self, address: Address, name: str, battery_study: BatteryStudy | None = None
    ) -> None:
        self._address = address
        self._address_str = str(address)
        self._name = str(name)
        self._battery: BatteryInfo | None = None
        self._ear_detection: EarDetectionStatus | None = None
        self._noise_mode: NoiseControlMode | None = None
        self._connected = False
        self._features = FeatureBitmap()
        self._features_present = FeatureBitmap()
        self._state_lock = threading.Lock()
        self._tracker = BatteryTracker(battery_study)
        self._tracker_lock = threading.Lock()
        self._conn: _ConnectionState | None = None
        self._conn_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return (
            f"AirPods(address={self._address_str!r}, name={self.name!r}, "
            f"connected={self._connected})"
        )

    @property
    def address(self) -> Address:
        return self._address

    @property
    def address_str(self) -> str:
        return self._address_str

    @property
    def name(self) -> str:
        with self._state_lock:
            return self._name

    def update_name(self, name: str) -> UpdateOp[str]:
        """Rename the device; an UPDATED result carries the old name."""
        with self._state_lock:
            if self._name == name:
                return UpdateOp(UpdateKind.NOOP)
            previous, self._name = self._name, str(name)
        return UpdateOp(UpdateKind.UPDATED, previous)

    @property
    def battery_info(self) -> BatteryInfo | None:
        return self._battery

    def update_battery_info(self, battery: BatteryInfo | None) -> UpdateOp[BatteryInfo]:
        with self._state_lock:
            previous, self._battery = self._battery, battery
        return UpdateOp.between(previous, battery)

    def is_connected(self) -> bool:
        return self._connected

    @property
    def ear_detection(self) -> EarDetectionStatus | None:
        return self._ear_detection

    def update_ear_detection(
        self, status: EarDetectionStatus | None
    ) -> UpdateOp[EarDetectionStatus]:
        with self._state_lock:
            previous, self._ear_detection = self._ear_detection, status
        return UpdateOp.between(previous, status)

    @property
    def noise_mode(self) -> NoiseControlMode | None:
        return self._noise_mode

    def update_noise_mode(self, mode: NoiseControlMode | None) -> UpdateOp[NoiseControlMode]:
        with self._state_lock:
            previous, self._noise_mode = self._noise_mode, mode
        return UpdateOp.between(previous, mode)

    def to_json(self) -> dict[str, Any]:
        """The device state as a JSON-ready dictionary."""
        info: dict[str, Any] = {
            "address": self._address_str,
            "name": self.name,
            "connected": self.is_connected(),
        }
        battery = self.battery_info
        if battery is not None:
            info["battery"] = battery.to_json()
        info["battery_ttl_estimate"] = self.estimate_battery_ttl()
        mode = self.noise_mode
        if mode is not None:
            info["noise_mode"] = mode.to_str()
        ear = self.ear_detection
        if ear is not None:
            info["ear_detection"] = ear.to_json()
        info["features"] = {feature.to_str(): enabled for feature, enabled in self.features()}
        return info

    def feature_enabled(self, feature: FeatureId) -> bool:
        return self._features.get(feature)

    def features(self) -> list[tuple[FeatureId, bool]]:
        """Every feature the device has reported, with whether it is enabled."""
        return [(feature, self.feature_enabled(feature)) for feature in self._features_present]

    def set_feature_enabled(self, feature: FeatureId, enabled: bool) -> bool:
        """Record a feature's state; returns whether it was enabled before."""
        self._features_present.set(feature, True)
        return self._features.set(feature, enabled)

    async def connect(
        self, event_bus: EventBus, connector: Connector | None = None
    ) -> asyncio.Task:
        """Open the control channel and start processing packets.

        The returned task finishes when the channel closes, with the error that
        closed it or None.
        """
        connector = connector if connector is not None else l2cap.connect
        log.info("Connecting to AirPods at %s", self._address)
        async with self._conn_lock:
            self._drop_connection()
            state = await self._start_connection(connector)
            processor = asyncio.get_running_loop().create_task(
                _packet_loop(
                    weakref.ref(self), self._address, state.connection.receiver, event_bus
                )
            )
            self._conn = state
            self._connected = True

        with self._tracker_lock:
            self._tracker.init_session(self._address, self.name)
        log.info("Successfully connected to %s", self._address)
        return processor

    async def disconnect(self) -> None:
        self._save_battery_study()
        self._connected = False
        async with self._conn_lock:
            self._drop_connection()
        log.info("Disconnected from %s", self._address)

    async def _notify_disconnected(self, event_bus: EventBus) -> None:
        await self.disconnect()
        event_bus.emit(self, AirPodsEvent(EventKind.DEVICE_DISCONNECTED))

    def _drop_connection(self) -> None:
        state, self._conn = self._conn, None
        if state is not None:
            state.close()

    async def _start_connection(self, connector: Connector) -> _ConnectionState:
        loop = asyncio.get_running_loop()
        handshake_ack = loop.create_future()
        features_ack = loop.create_future()
        hooks = (
            l2cap.Hooks()
            .prefix_once(HDR_ACK_HANDSHAKE, lambda _: _settle(handshake_ack))
            .prefix_once(HDR_ACK_FEATURES, lambda _: _settle(features_ack))
        )

        connection = await connector(hooks, self._address)
        sender = connection.sender
        try:
            log.info("Starting handshake sequence...")
            await self._send_step(sender, PKT_HANDSHAKE, "handshake", handshake_ack)
            await self._send_step(sender, PKT_SET_FEATURES, "features", features_ack)
            try:
                await sender.send(PKT_REQUEST_NOTIFY)
            except AirPodsError as exc:
                log.error("Failed to send notification request: %r", exc)
                raise
        except BaseException:
            connection.close()
            raise

        log.info("%s: Handshake sequence completed", self._address)
        retry = loop.create_task(_retry_notifications(weakref.ref(self), self._address, sender))
        return _ConnectionState(connection, [retry])

    @staticmethod
    async def _send_step(
        sender: Any, packet: bytes, label: str, ack: asyncio.Future
    ) -> None:
        try:
            await sender.send(packet)
        except AirPodsError as exc:
            log.error("Failed to send %s: %r", label, exc)
            raise
        try:
            await _wait_for_ack(ack)
        except AirPodsError as exc:
            log.warning(
                "No %s acknowledgment received (%r), continuing anyway...", label, exc
            )
        else:
            log.info("%s acknowledged", label.capitalize())

    def _sender(self) -> Any:
        state = self._conn
        if state is None:
            raise DeviceNotConnectedError()
        return state.connection.sender

    async def set_noise_control(self, mode: NoiseControlMode) -> None:
        sender = self._sender()
        packet = build_control_packet(_NOISE_CONTROL_CMD, int(mode.value).to_bytes(4, "little"))
        await sender.send(bytes(packet))
        with self._state_lock:
            self._noise_mode = mode

    async def passthrough(self, packet: bytes) -> None:
        """Send raw bytes to the device."""
        await self._sender().send(bytes(packet))

    async def set_feature(self, feature: FeatureId, enabled: bool) -> None:
        sender = self._sender()
        code = _FEATURE_ENABLE if enabled else _FEATURE_DISABLE
        packet = build_control_packet(_feature_code(feature), code.to_bytes(4, "little"))
        await sender.send(bytes(packet))
        self.set_feature_enabled(feature, enabled)

    def process_packet(self, packet: bytes, event_bus: EventBus) -> None:
        """Apply one received packet to the device state, emitting events on change."""
        packet = bytes(packet)
        address = self._address
        if packet.startswith(HDR_BATTERY_STATE):
            try:
                battery = parser.parse_battery_status(packet)
            except InvalidPacketError as exc:
                log.warning("Failed to parse battery: %s", exc)
                return
            log.debug(
                "Battery updated for %s: L:%d%% R:%d%% C:%d%%",
                address,
                battery.left.level,
                battery.right.level,
                battery.case.level,
            )
            if self.update_battery_info(battery).is_updated():
                with self._tracker_lock:
                    self._tracker.record_battery_drop(battery.left, battery.right)
                event_bus.emit(self, AirPodsEvent(EventKind.BATTERY_UPDATED, battery))
        elif packet.startswith(HDR_NOISE_CTL):
            try:
                mode = parser.parse_noise_mode(packet)
            except InvalidPacketError as exc:
                log.warning("Failed to parse noise mode: %s", exc)
                return
            log.debug("Noise mode updated for %s: %s", address, mode)
            if self.update_noise_mode(mode).is_updated():
                event_bus.emit(self, AirPodsEvent(EventKind.NOISE_CONTROL_CHANGED, mode))
        elif packet.startswith(HDR_EAR_DETECTION):
            try:
                status = parser.parse_ear_detection(packet)
            except InvalidPacketError as exc:
                log.warning("Failed to parse ear detection: %s", exc)
                return
            log.debug(
                "Ear detection updated for %s: L:%s R:%s",
                address,
                status.is_left_in_ear(),
                status.is_right_in_ear(),
            )
            if self.update_ear_detection(status).is_updated():
                event_bus.emit(self, AirPodsEvent(EventKind.EAR_DETECTION_CHANGED, status))
        elif packet.startswith(HDR_METADATA):
            try:
                metadata = parser.parse_metadata(packet)
            except InvalidPacketError:
                return
            log.debug("Device metadata for %s: %s", address, metadata)
            new_name = metadata.name_candidate
            if new_name is not None and self.update_name(new_name).is_updated():
                event_bus.emit(self, AirPodsEvent(EventKind.DEVICE_NAME_CHANGED, new_name))
        elif packet.startswith(HDR_ACK_HANDSHAKE):
            log.debug("Received handshake ACK from %s", address)
        elif packet.startswith(HDR_ACK_FEATURES):
            log.debug("Received features ACK from %s", address)
        elif (parsed := FeatureCmd.parse(packet)) is not None:
            feature, op = parsed
            log.debug("Received feature command from %s: %s %s", address, feature, op)
            if op.value in (_FEATURE_ENABLE, _FEATURE_DISABLE):
                self.set_feature_enabled(feature, op.value == _FEATURE_ENABLE)
        else:
            if len(packet) < 16:
                data = packet.hex()
            else:
                data = f"{packet[:8].hex()}..{packet[8:].hex()}"
            log.debug("Unknown packet from %s | %d bytes => %s", address, len(packet), data)

    def estimate_battery_ttl(self) -> int | None:
        """Minutes of battery left, falling back to a typical drain rate."""
        battery = self.battery_info
        if battery is None:
            return None
        with self._tracker_lock:
            estimate = self._tracker.estimate_ttl(battery, self.noise_mode, self._address)
        if estimate is not None:
            return estimate
        min_level = float(min(battery.left.level, battery.right.level))
        return int(min_level / _DEFAULT_DRAIN_RATE * 60.0)

    def _save_battery_study(self) -> None:
        mode = self.noise_mode or _DEFAULT_NOISE_MODE
        with self._tracker_lock:
            self._tracker.save_to_study(self._address, mode)

    def _should_save_battery_study(self, interval_minutes: int) -> bool:
        battery = self.battery_info
        if battery is None:
            return False
        with self._tracker_lock:
            return self._tracker.should_save(interval_minutes, battery)

    def tick(self) -> None:
        """Run periodic work: save battery statistics when enough has accumulated."""
        if not self.is_connected():
            log.debug("Device %s not connected, skipping tick", self._address)
            return
        if self._should_save_battery_study(_SAVE_INTERVAL_MINUTES):
            log.debug("Performing periodic battery save for %s", self._address)
            self._save_battery_study()
        else:
            log.debug("Battery save check for %s returned false", self._address)