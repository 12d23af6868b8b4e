import asyncio
import threading

import pytest

from gnomepods.events import AirPodsEvent, EventBus, EventKind, EventProcessor
from gnomepods.protocol import (
    BatteryInfo,
    BatteryState,
    BatteryStatus,
    EarDetectionStatus,
    NoiseControlMode,
)

DEVICE = object()


def test_event_payload_validation():
    battery = BatteryInfo(left=BatteryState(50, BatteryStatus.NORMAL))
    event = AirPodsEvent(EventKind.BATTERY_UPDATED, battery)
    assert event.payload == battery
    with pytest.raises(TypeError):
        AirPodsEvent(EventKind.BATTERY_UPDATED)
    with pytest.raises(TypeError):
        AirPodsEvent(EventKind.NOISE_CONTROL_CHANGED, "anc")
    with pytest.raises(TypeError):
        AirPodsEvent(EventKind.DEVICE_CONNECTED, "extra")


def test_events_compare_by_value():
    a = AirPodsEvent(EventKind.EAR_DETECTION_CHANGED, EarDetectionStatus(True, False))
    b = AirPodsEvent(EventKind.EAR_DETECTION_CHANGED, EarDetectionStatus(True, False))
    assert a == b


def test_event_bus_is_abstract():
    with pytest.raises(TypeError):
        EventBus()


@pytest.mark.asyncio
async def test_events_received_in_order():
    proc = EventProcessor()
    events = [
        AirPodsEvent(EventKind.DEVICE_CONNECTED),
        AirPodsEvent(EventKind.NOISE_CONTROL_CHANGED, NoiseControlMode.ACTIVE),
        AirPodsEvent(EventKind.DEVICE_NAME_CHANGED, "Pods"),
    ]
    for event in events:
        proc.emit(DEVICE, event)
    received = [await proc.recv() for _ in events]
    assert received == [(DEVICE, e) for e in events]


@pytest.mark.asyncio
async def test_close_drains_then_ends():
    proc = EventProcessor()
    event = AirPodsEvent(EventKind.DEVICE_ERROR)
    proc.emit(DEVICE, event)
    proc.close()
    assert await proc.recv() == (DEVICE, event)
    assert await proc.recv() is None


@pytest.mark.asyncio
async def test_waiting_receiver_woken_by_emit():
    proc = EventProcessor()
    task = asyncio.create_task(proc.recv())
    await asyncio.sleep(0.01)
    assert not task.done()
    event = AirPodsEvent(EventKind.DEVICE_DISCONNECTED)
    proc.emit(DEVICE, event)
    assert await asyncio.wait_for(task, 0.5) == (DEVICE, event)


@pytest.mark.asyncio
async def test_emit_from_other_thread():
    proc = EventProcessor()
    task = asyncio.create_task(proc.recv())
    await asyncio.sleep(0.01)
    event = AirPodsEvent(EventKind.DEVICE_CONNECTED)
    thread = threading.Thread(target=proc.emit, args=(DEVICE, event))
    thread.start()
    result = await asyncio.wait_for(task, 0.5)
    thread.join()
    assert result == (DEVICE, event)


@pytest.mark.asyncio
async def test_close_wakes_waiting_receiver():
    proc = EventProcessor()
    task = asyncio.create_task(proc.recv())
    await asyncio.sleep(0.01)
    proc.close()
    assert await asyncio.wait_for(task, 0.5) is None


@pytest.mark.asyncio
async def test_async_iteration_stops_on_close():
    proc = EventProcessor()
    events = [AirPodsEvent(EventKind.DEVICE_CONNECTED), AirPodsEvent(EventKind.DEVICE_ERROR)]
    for event in events:
        proc.emit(DEVICE, event)
    proc.close()
    received = [item async for item in proc]
    assert received == [(DEVICE, e) for e in events]