# gnomepods

A library for talking to AirPods over their accessory control protocol on
Linux: packet building and parsing, the state of a connected device, an
asyncio L2CAP packet channel, battery time-remaining estimates backed by a
persistent per-device study, and the service configuration file.

## Modules

- `gnomepods.protocol` – packet constants and data types: `Address`,
  `Component`, `BatteryStatus`, `BatteryState`, `BatteryInfo`,
  `NoiseControlMode`, `NoiseControlMap`, `FeatureId`, `FeatureBitmap`,
  `FeatureCmd`, `EarDetectionStatus` and `build_control_packet`.
- `gnomepods.parser` – `parse_battery_status`, `parse_noise_mode`,
  `parse_ear_detection` and `parse_metadata` (returning `Metadata`).
- `gnomepods.errors` – the exception hierarchy rooted at `AirPodsError`.
- `gnomepods.ringbuf` – `Ring`, a fixed-capacity buffer that overwrites its
  oldest value when full.
- `gnomepods.config` – `Config` and `KnownDevice`, stored as TOML.
- `gnomepods.events` – `AirPodsEvent`, `EventKind`, the `EventBus` interface
  and `EventProcessor`, a queue read by one asyncio consumer.
- `gnomepods.l2cap` – `connect` and `attach`, returning an `L2CapConnection`
  with an `L2CapReceiver`, an `L2CapSender` and packet `Hooks`.
- `gnomepods.battery_study` – `BatteryStudy`, drain-rate statistics per
  device kept in an LMDB database, and `BatteryHistory`.
- `gnomepods.battery_tracker` – `BatteryTracker`, live battery history and
  time-to-live estimates.
- `gnomepods.device` – `AirPods`, the state and control channel of one device.

## Parsing packets

```python
from gnomepods.parser import parse_battery_status, parse_noise_mode
from gnomepods.protocol import NoiseControlMode

packet = bytes([
    0x04, 0x00, 0x04, 0x00, 0x04, 0x00, 0x02,
    0x04, 0x01, 80, 0x02, 0x01,   # left bud, 80 %, discharging
    0x02, 0x01, 75, 0x00, 0x01,   # right bud, 75 %, normal
])
battery = parse_battery_status(packet)
print(battery.left.level, battery.right.level)   # 80 75
print(battery.case.is_available())               # False
print(battery.to_json()["left"])                 # {'level': 80, 'charging': False}

mode = parse_noise_mode(bytes([0x04, 0x00, 0x04, 0x00, 0x09, 0x00, 0x0D, 0x02]))
assert mode is NoiseControlMode.ACTIVE
print(mode.to_str())                             # anc
```

Malformed packets raise subclasses of `InvalidPacketError`, such as
`WrongPacketTypeError`, `PacketTooShortError`, `InvalidBatteryCountError`,
`PacketSizeMismatchError` or `UnknownNoiseModeError`.

## Building commands

```python
from gnomepods.protocol import FeatureCmd, FeatureId, NoiseControlMode

packet = FeatureCmd.ENABLE.build(FeatureId.parse("one_bud_anc"))
feature, cmd = FeatureCmd.parse(packet)
assert feature == FeatureId.ONE_BUD_ANC and cmd is FeatureCmd.ENABLE

mode = NoiseControlMode.parse("transparency")
```

`FeatureId.parse` ignores case and raises `ValueError` for unknown names;
`FeatureCmd.parse` returns `None` for anything that is not a feature command.

## Device state

`AirPods` holds the last reported battery, noise mode, ear detection, name
and features of one device. `process_packet` applies a received packet and
emits an `AirPodsEvent` on an `EventBus` whenever a value changes:

```python
from gnomepods.device import AirPods
from gnomepods.events import EventProcessor
from gnomepods.protocol import Address

bus = EventProcessor()
device = AirPods(Address.parse("AA:BB:CC:DD:EE:FF"), "My AirPods")
device.process_packet(packet, bus)
print(device.to_json())
```

`await device.connect(bus)` opens the L2CAP control channel, performs the
handshake and returns a task that processes packets until the channel closes;
a custom connector can be passed as the second argument. `set_noise_control`,
`set_feature` and `passthrough` send commands over the open channel and raise
`DeviceNotConnectedError` otherwise. `tick()` saves battery statistics
periodically while connected.

## Battery estimates

```python
from gnomepods.battery_study import BatteryStudy
from gnomepods.battery_tracker import BatteryTracker
from gnomepods.protocol import Address, NoiseControlMode

address = Address.parse("AA:BB:CC:DD:EE:FF")
with BatteryStudy.open("/tmp/battery_study.db") as study:
    tracker = BatteryTracker(study)
    tracker.init_session(address, "My AirPods")

    # feed battery readings as they arrive
    tracker.record_battery_drop(battery.left, battery.right)
    minutes = tracker.estimate_ttl(battery, NoiseControlMode.ACTIVE, address)

    tracker.save_to_study(address, NoiseControlMode.ACTIVE)
```

`BatteryStudy.open()` without a path uses the user data directory, or the
path in the `AIRPODS_BATTERY_DB_PATH` environment variable.

## Configuration

`Config.load()` reads `kairpods/config.toml` from the user configuration
directory (or the path in `AIRPODS_CONFIG_PATH`), writing defaults if the file
does not exist yet:

```toml
poll_interval = 30
connection_retry_count = 10
reconnect_delay_sec = 10
notification_retries = 3

[[known_devices]]
address = "AA:BB:CC:DD:EE:FF"
name = "My AirPods"
```

Invalid files raise `ConfigParseError`. `Config.is_known_device(address)`
returns the registered name or `None`.

## What this package does not do

It is a library only. It has no command to run, no D-Bus service, no
Bluetooth adapter discovery or device manager that finds paired AirPods and
connects to them automatically, and no graphical interface. Callers create
`AirPods` objects themselves and drive `connect`, `tick` and the event queue.

## Tests

The test suite uses pytest and pytest-asyncio, available through the `test`
extra.