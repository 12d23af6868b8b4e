import math
import time

import pytest

from gnomepods.battery_study import (
    BATTERY_HISTORY_SIZE,
    BatteryHistory,
    BatteryStudy,
    calculate_slope,
    db_path,
    seconds_since_init,
)
from gnomepods.errors import StudyNotFoundError
from gnomepods.protocol import Address, NoiseControlMode

TEST_ADDRESS = Address(bytes([0xAA, 0xBB, 0xCC, 0xDD, 0xEE, 0xFF]))
OTHER_ADDRESS = Address(bytes([0x02, 0x00, 0x00, 0x00, 0x00, 0x01]))


@pytest.fixture
def study(tmp_path):
    manager = BatteryStudy.open(tmp_path / "battery_study.db")
    yield manager
    manager.close()


def test_create_and_get_study(study):
    created = study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    assert created.device_name == "Test AirPods"
    assert created.total_sessions == 0
    assert created.total_samples == 0


def test_existing_study_is_returned(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    again = study.get_or_create_study(TEST_ADDRESS, "Other name")
    assert again.device_name == "Test AirPods"


def test_update_drain_rate(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE, 12.5, 10)

    rate, confidence = study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE)
    assert rate == pytest.approx(12.5, abs=0.001)
    assert confidence == 0.0

    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE, 11.5, 10)
    rate, confidence = study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE)
    assert rate == pytest.approx(12.0, abs=0.001)
    assert 0.0 < confidence < math.inf


def test_update_counts_samples(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.OFF, 10.0, 4)
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.ADAPTIVE, 15.0, 6)
    stored = study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    assert stored.total_samples == 10
    assert len(stored.drain_rates) == 2
    assert stored.drain_rates.get(NoiseControlMode.OFF).samples == 4


def test_single_sample_has_infinite_confidence(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.OFF, 9.0, 1)
    rate, confidence = study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.OFF)
    assert rate == pytest.approx(9.0)
    assert confidence == math.inf


def test_update_without_study_raises(study):
    with pytest.raises(StudyNotFoundError):
        study.update_drain_rate(OTHER_ADDRESS, NoiseControlMode.OFF, 10.0, 5)


def test_missing_rates_are_none(study):
    assert study.get_drain_rate(OTHER_ADDRESS, NoiseControlMode.OFF) is None
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    assert study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.TRANSPARENCY) is None


def test_increment_session_count(study):
    study.increment_session_count(TEST_ADDRESS)
    assert study.get_or_create_study(TEST_ADDRESS, "Test AirPods").total_sessions == 0
    study.increment_session_count(TEST_ADDRESS)
    study.increment_session_count(TEST_ADDRESS)
    assert study.get_or_create_study(TEST_ADDRESS, "Test AirPods").total_sessions == 2


def test_data_survives_reopen(tmp_path):
    path = tmp_path / "db"
    with BatteryStudy.open(path) as first:
        first.get_or_create_study(TEST_ADDRESS, "Test AirPods")
        first.update_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE, 12.5, 10)
    with BatteryStudy.open(path) as second:
        rate, _ = second.get_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE)
        assert rate == pytest.approx(12.5)


def test_db_path_override(monkeypatch, tmp_path):
    target = tmp_path / "custom"
    monkeypatch.setenv("AIRPODS_BATTERY_DB_PATH", str(target))
    assert db_path() == target


def test_db_path_default_location(monkeypatch):
    monkeypatch.delenv("AIRPODS_BATTERY_DB_PATH", raising=False)
    path = db_path()
    assert path.name == "battery_study.db"
    assert path.parent.name == "kairpods"


def test_battery_history_ring_buffer():
    history = BatteryHistory()
    base_time = time.monotonic()
    assert len(history) == 0
    assert history.last_level() is None

    for i in range(5):
        history.push(base_time + i * 60, 100 - i)

    assert len(history) == 5
    assert history.last_level() == 96
    samples = list(history)
    assert len(samples) == 5
    assert samples[0][1] == 100
    assert samples[4][1] == 96


def test_battery_history_wraparound():
    history = BatteryHistory()
    base_time = time.monotonic()
    for i in range(80):
        history.push(base_time + i * 60, 100 - i)

    assert len(history) == BATTERY_HISTORY_SIZE
    samples = list(history)
    assert len(samples) == BATTERY_HISTORY_SIZE
    assert samples[0][1] == 52


def test_record_battery_drop_ignores_rises():
    history = BatteryHistory()
    now = time.monotonic()
    history.record_battery_drop(80, now)
    history.record_battery_drop(85, now + 1)
    history.record_battery_drop(80, now + 2)
    history.record_battery_drop(75, now + 3)
    assert [level for _, level in history] == [80, 75]


def test_oldest_timestamp_and_clear():
    history = BatteryHistory()
    assert history.oldest_timestamp() is None
    stamp = time.monotonic() + 120
    history.push(stamp, 90)
    history.push(stamp + 60, 80)
    oldest = history.oldest_timestamp()
    assert stamp - 1 < oldest <= stamp
    history.clear()
    assert len(history) == 0
    assert history.oldest_timestamp() is None


def test_truncate_front_keeps_recent():
    history = BatteryHistory()
    now = time.monotonic()
    for i in range(8):
        history.push(now + i, 100 - i)
    history.truncate_front(5)
    assert [level for _, level in history] == [97, 96, 95, 94, 93]


def test_calculate_drain_rate():
    history = BatteryHistory()
    now = time.monotonic()
    for i in range(4):
        history.push(now + i * 3600, 100 - 10 * i)
    assert history.calculate_drain_rate(5) is None
    rate, alpha = history.calculate_drain_rate(4)
    assert rate == pytest.approx(10.0)
    assert alpha == 0.1


def test_calculate_drain_rate_alpha_with_many_samples():
    history = BatteryHistory()
    now = time.monotonic()
    for i in range(12):
        history.push(now + i * 600, 100 - i)
    _, alpha = history.calculate_drain_rate(4)
    assert alpha == 0.3


def test_calculate_drain_rate_drops_old_samples():
    history = BatteryHistory()
    now = time.monotonic() + 20_000
    for i in range(4):
        history.push(now - 4 * 3600 + i * 60, 100 - i)
    assert history.calculate_drain_rate(4, now - 2 * 3600) is None
    assert history.calculate_drain_rate(4, now - 5 * 3600) is not None


def test_calculate_slope():
    assert calculate_slope([(0, 100), (3600, 90)]) == pytest.approx(10.0)
    assert calculate_slope([(0, 90), (3600, 100)]) is None
    assert calculate_slope([(0, 90)]) is None
    assert calculate_slope([(50, 90), (50, 80)]) is None


def test_seconds_since_init_before_start_is_zero():
    assert seconds_since_init(time.monotonic() - 10**7) == 0
    later = time.monotonic() + 100
    assert seconds_since_init(later + 60) - seconds_since_init(later) == 60