"""Persistent per-device battery drain statistics and short-term battery history."""

from __future__ import annotations

import json
import logging
import math
import os
import sys
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator

import lmdb
import platformdirs

from .errors import BatteryStudyError, DataDirectoryNotFoundError, StudyNotFoundError
from .protocol import Address, NoiseControlMap, NoiseControlMode
from .ringbuf import Ring

log = logging.getLogger(__name__)

BATTERY_HISTORY_SIZE = 32
"""Number of battery samples kept per bud."""
MIN_SAMPLES_TO_SAVE = 3
"""Minimum number of samples before a study is worth saving."""

_MAP_SIZE = 10 * 1024 * 1024
_U32_MAX = 2**32 - 1
_BASE_TIME = time.monotonic()


def seconds_since_init(timestamp: float) -> int:
    """Whole seconds from module start to a ``time.monotonic()`` timestamp, or 0 before it."""
    elapsed = timestamp - _BASE_TIME
    if elapsed < 0:
        return 0
    return int(elapsed) & _U32_MAX


def _instant(seconds: int) -> float:
    return _BASE_TIME + seconds


def calculate_slope(samples: Iterable[tuple[int, int]]) -> float | None:
    """Drain rate in percent per hour from ``(seconds, level)`` samples.

    Fits a least-squares line; returns None for fewer than two samples,
    a degenerate time range, or a level that is not falling.
    """
    points = list(samples)
    if len(points) < 2:
        return None

    n = float(len(points))
    base = points[0][0]
    sum_x = sum_y = sum_xy = sum_xx = 0.0
    for seconds, level in points:
        x = max(seconds - base, 0) / 3600.0
        y = float(level)
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_xx += x * x

    denominator = n * sum_xx - sum_x * sum_x
    if abs(denominator) < sys.float_info.epsilon:
        return None
    slope = (n * sum_xy - sum_x * sum_y) / denominator
    return -slope if slope < 0.0 else None


class BatteryHistory:
    """Recent battery levels of one bud, stamped with seconds since start."""

    def __init__(self) -> None:
        self._samples: Ring[tuple[int, int]] = Ring(BATTERY_HISTORY_SIZE)

    def push(self, timestamp: float, level: int) -> None:
        self._samples.push((seconds_since_init(timestamp), level))

    def __iter__(self) -> Iterator[tuple[int, int]]:
        return iter(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def clear(self) -> None:
        self._samples.clear()

    def last_level(self) -> int | None:
        last = self._samples.last()
        return None if last is None else last[1]

    def oldest_timestamp(self) -> float | None:
        """Monotonic time of the oldest sample, to the second."""
        first = self._samples.get(0)
        return None if first is None else _instant(first[0])

    def record_battery_drop(self, level: int, timestamp: float) -> None:
        """Record ``level`` if it is the first sample or lower than the last one."""
        last = self.last_level()
        if last is not None:
            if level >= last:
                return
            log.debug(
                "Battery dropped from %d to %d (sample #%d, elapsed: %.1fs)",
                last,
                level,
                len(self) + 1,
                timestamp - _BASE_TIME,
            )
        else:
            log.debug("Recording initial battery level: %d (first sample)", level)
        self.push(timestamp, level)

    def calculate_drain_rate(
        self, min_samples: int, max_age: float | None = None
    ) -> tuple[float, float] | None:
        """``(rate, alpha)``: percent per hour and a smoothing factor.

        Samples older than the monotonic time ``max_age`` are ignored.
        """
        if len(self) < min_samples:
            return None
        samples = [
            (seconds, level)
            for seconds, level in self
            if max_age is None or _instant(seconds) >= max_age
        ]
        if len(samples) < min_samples:
            return None
        rate = calculate_slope(samples)
        if rate is None:
            return None
        alpha = 0.3 if len(samples) >= 10 else 0.1
        return rate, alpha

    def truncate_front(self, count: int) -> None:
        """Keep only the ``count`` most recent samples."""
        self._samples.truncate_front(count)

    def __repr__(self) -> str:
        return f"BatteryHistory({list(self)!r})"


@dataclass
class DrainRateStats:
    """Running mean and variance of the drain rate in one noise mode."""

    rate: float
    variance: float = 0.0
    samples: int = 0
    last_updated: int = 0


@dataclass
class DeviceStudy:
    """Long-term battery statistics of one device."""

    device_name: str
    last_updated: int
    total_sessions: int = 0
    total_samples: int = 0
    drain_rates: NoiseControlMap[DrainRateStats] = field(default_factory=NoiseControlMap)


def _unix_now() -> int:
    return int(time.time())


def _encode_study(study: DeviceStudy) -> bytes:
    rates: list[dict[str, Any] | None] = [None] * len(NoiseControlMode)
    for mode, stats in study.drain_rates.items():
        rates[mode.index()] = asdict(stats)
    record = {
        "device_name": study.device_name,
        "last_updated": study.last_updated,
        "total_sessions": study.total_sessions,
        "total_samples": study.total_samples,
        "drain_rates": rates,
    }
    return json.dumps(record).encode("utf-8")


def _decode_study(raw: bytes) -> DeviceStudy:
    try:
        record = json.loads(bytes(raw).decode("utf-8"))
        rates: NoiseControlMap[DrainRateStats] = NoiseControlMap()
        for index, stats in enumerate(record["drain_rates"]):
            mode = NoiseControlMode.from_index(index)
            if stats is not None and mode is not None:
                rates.insert(mode, DrainRateStats(**stats))
        return DeviceStudy(
            device_name=record["device_name"],
            last_updated=record["last_updated"],
            total_sessions=record["total_sessions"],
            total_samples=record["total_samples"],
            drain_rates=rates,
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise BatteryStudyError(f"Database operation error: corrupt record: {exc}") from exc


def db_path() -> Path:
    """Location of the database; AIRPODS_BATTERY_DB_PATH overrides it."""
    override = os.environ.get("AIRPODS_BATTERY_DB_PATH")
    if override is not None:
        return Path(override)
    base = platformdirs.user_data_path()
    if not str(base):
        raise DataDirectoryNotFoundError()
    return base / "kairpods" / "battery_study.db"


class BatteryStudy:
    """Per-device drain statistics kept in an LMDB database, keyed by address."""

    def __init__(self, env: lmdb.Environment, devices: Any) -> None:
        self._env = env
        self._devices = devices

    @classmethod
    def open(cls, path: str | os.PathLike[str] | None = None) -> BatteryStudy:
        """Open or create the database at ``path`` (default: :func:`db_path`)."""
        location = Path(path) if path is not None else db_path()
        try:
            location.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BatteryStudyError(
                f"Failed to create battery study directory: {exc}"
            ) from exc
        try:
            env = lmdb.open(str(location), map_size=_MAP_SIZE, max_dbs=1)
        except lmdb.Error as exc:
            raise BatteryStudyError(f"Failed to open database environment: {exc}") from exc
        try:
            devices = env.open_db(b"devices")
        except lmdb.Error as exc:
            env.close()
            raise BatteryStudyError(f"Database operation error: {exc}") from exc
        return cls(env, devices)

    def close(self) -> None:
        self._env.close()

    def __enter__(self) -> BatteryStudy:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[Any]:
        try:
            with self._env.begin(db=self._devices, write=write) as txn:
                yield txn
        except lmdb.Error as exc:
            raise BatteryStudyError(f"Database operation error: {exc}") from exc

    def get_or_create_study(self, address: Address, device_name: str) -> DeviceStudy:
        """The stored study of ``address``, creating an empty one if none exists."""
        key = bytes(address)
        with self._transaction(write=True) as txn:
            raw = txn.get(key)
            if raw is not None:
                return _decode_study(raw)
            study = DeviceStudy(device_name=str(device_name), last_updated=_unix_now())
            txn.put(key, _encode_study(study))
            return study

    def update_drain_rate(
        self, address: Address, mode: NoiseControlMode, new_rate: float, samples: int
    ) -> None:
        """Merge a measured rate into the running statistics (Welford's method)."""
        key = bytes(address)
        with self._transaction(write=True) as txn:
            raw = txn.get(key)
            if raw is None:
                raise StudyNotFoundError()
            study = _decode_study(raw)
            stats = study.drain_rates.get_or_insert_with(
                mode, lambda: DrainRateStats(rate=new_rate)
            )

            k = float(samples)
            n = float(stats.samples)
            if n + k > 0:
                delta = new_rate - stats.rate
                stats.rate += delta * k / (n + k)
                if stats.samples > 0:
                    delta2 = new_rate - stats.rate
                    stats.variance = (stats.variance * n + delta * delta2 * k) / (n + k)

            now = _unix_now()
            stats.samples += samples
            stats.last_updated = now
            study.total_samples += samples
            study.last_updated = now
            txn.put(key, _encode_study(study))

    def get_drain_rate(
        self, address: Address, mode: NoiseControlMode
    ) -> tuple[float, float] | None:
        """``(rate, confidence)`` where confidence is the 95% interval half-width."""
        with self._transaction() as txn:
            raw = txn.get(bytes(address))
        if raw is None:
            return None
        stats = _decode_study(raw).drain_rates.get(mode)
        if stats is None:
            return None
        if stats.samples > 1:
            confidence = 1.96 * math.sqrt(stats.variance / stats.samples)
        else:
            confidence = math.inf
        return stats.rate, confidence

    def increment_session_count(self, address: Address) -> None:
        """Count one more session for a device that has a study; others are ignored."""
        key = bytes(address)
        with self._transaction(write=True) as txn:
            raw = txn.get(key)
            if raw is None:
                return
            study = _decode_study(raw)
            study.total_sessions += 1
            study.last_updated = _unix_now()
            txn.put(key, _encode_study(study))