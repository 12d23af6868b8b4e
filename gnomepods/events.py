"""Device events and the queue that carries them to listeners."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from .protocol import BatteryInfo, EarDetectionStatus, NoiseControlMode

if TYPE_CHECKING:
    from .device import AirPods

_POLL_INTERVAL = 1.0


class EventKind(Enum):
    DEVICE_CONNECTED = auto()
    DEVICE_DISCONNECTED = auto()
    DEVICE_ERROR = auto()
    BATTERY_UPDATED = auto()
    NOISE_CONTROL_CHANGED = auto()
    EAR_DETECTION_CHANGED = auto()
    DEVICE_NAME_CHANGED = auto()


_PAYLOAD_TYPES: dict[EventKind, type] = {
    EventKind.BATTERY_UPDATED: BatteryInfo,
    EventKind.NOISE_CONTROL_CHANGED: NoiseControlMode,
    EventKind.EAR_DETECTION_CHANGED: EarDetectionStatus,
    EventKind.DEVICE_NAME_CHANGED: str,
}


@dataclass(frozen=True)
class AirPodsEvent:
    """A change of device state; some kinds carry the new value."""

    kind: EventKind
    payload: Any = None

    def __post_init__(self) -> None:
        expected = _PAYLOAD_TYPES.get(self.kind)
        if expected is None:
            if self.payload is not None:
                raise TypeError(f"{self.kind.name} events carry no payload")
        elif not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.kind.name} events carry a {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )


class EventBus(ABC):
    """Something that accepts device events."""

    @abstractmethod
    def emit(self, device: AirPods, event: AirPodsEvent) -> None:
        """Deliver an event about ``device``."""


class EventProcessor(EventBus):
    """An unbounded event queue read by one asynchronous consumer.

    ``emit`` may be called from any thread; ``recv`` runs in an event loop.
    """

    def __init__(self) -> None:
        self._queue: deque[tuple[AirPods, AirPodsEvent]] = deque()
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None

    def emit(self, device: AirPods, event: AirPodsEvent) -> None:
        self._queue.append((device, event))
        self._notify()

    def close(self) -> None:
        """Stop the consumer once the queued events are drained."""
        self._closed = True
        self._notify()

    def _notify(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wakeup.set()
            return
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError:
            pass  # the loop has been closed

    async def recv(self) -> tuple[AirPods, AirPodsEvent] | None:
        """The next queued event, or None once closed and drained."""
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._wakeup is None:
            self._loop = loop
            self._wakeup = asyncio.Event()
        wakeup = self._wakeup
        while True:
            if self._queue:
                return self._queue.popleft()
            wakeup.clear()
            if self._queue:
                continue
            if self._closed:
                return None
            try:
                await asyncio.wait_for(wakeup.wait(), _POLL_INTERVAL)
            except TimeoutError:
                pass

    def __aiter__(self) -> EventProcessor:
        return self

    async def __anext__(self) -> tuple[AirPods, AirPodsEvent]:
        item = await self.recv()
        if item is None:
            raise StopAsyncIteration
        return item