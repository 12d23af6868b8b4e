import math
import time

import pytest

from gnomepods.battery_study import BatteryStudy
from gnomepods.battery_tracker import BatteryTracker, combine_drain_rates
from gnomepods.protocol import (
    Address,
    BatteryInfo,
    BatteryState,
    BatteryStatus,
    NoiseControlMode,
)

TEST_ADDRESS = Address.parse("02:00:00:00:00:01")


def mock_state(level, charging=False):
    return BatteryState(level, BatteryStatus.CHARGING if charging else BatteryStatus.NORMAL)


def battery(left, right, left_status=BatteryStatus.NORMAL, right_status=BatteryStatus.NORMAL):
    return BatteryInfo(
        left=BatteryState(left, left_status),
        right=BatteryState(right, right_status),
        case=BatteryState(80, BatteryStatus.NORMAL),
    )


def fill_left(tracker, count):
    """Samples 10 minutes apart, dropping 2% each: 12%/hr."""
    start = time.monotonic()
    for i in range(count):
        tracker.left_history.push(start + i * 600, 100 - 2 * i)


@pytest.fixture
def study(tmp_path):
    db = BatteryStudy.open(tmp_path / "battery.db")
    yield db
    db.close()


def test_ttl_none_when_charging():
    tracker = BatteryTracker(None)
    info = battery(50, 60, left_status=BatteryStatus.CHARGING)
    assert tracker.estimate_ttl(info, NoiseControlMode.OFF, TEST_ADDRESS) is None


def test_ttl_none_when_bud_disconnected():
    tracker = BatteryTracker(None)
    fill_left(tracker, 4)
    info = battery(50, 0, right_status=BatteryStatus.DISCONNECTED)
    assert tracker.estimate_ttl(info, NoiseControlMode.OFF, TEST_ADDRESS) is None


def test_clears_on_charging():
    tracker = BatteryTracker(None)
    for i in range(5):
        level = 100 - i * 2
        tracker.record_battery_drop(mock_state(level), mock_state(level))
    assert len(tracker.left_history) == 5
    assert len(tracker.right_history) == 5

    tracker.record_battery_drop(mock_state(90, True), mock_state(90))
    assert len(tracker.left_history) == 0
    assert len(tracker.right_history) == 5


def test_record_ignores_rising_level():
    tracker = BatteryTracker(None)
    tracker.record_battery_drop(mock_state(80), mock_state(80))
    tracker.record_battery_drop(mock_state(85), mock_state(70))
    assert tracker.left_history.last_level() == 80
    assert tracker.right_history.last_level() == 70


def test_insufficient_data():
    tracker = BatteryTracker(None)
    for i in range(3):
        level = 100 - i
        tracker.record_battery_drop(mock_state(level), mock_state(level))
    info = battery(97, 97)
    assert tracker.estimate_ttl(info, NoiseControlMode.OFF, TEST_ADDRESS) is None


def test_local_estimate_and_smoothing():
    tracker = BatteryTracker(None)
    fill_left(tracker, 4)
    info = battery(60, 60)
    assert tracker.estimate_ttl(info, None, TEST_ADDRESS) == 300
    assert tracker.estimate_ttl(info, None, TEST_ADDRESS) == 300
    assert tracker.last_ttl_estimate == 300


def test_charging_resets_cached_estimate():
    tracker = BatteryTracker(None)
    fill_left(tracker, 4)
    assert tracker.estimate_ttl(battery(60, 60), None, TEST_ADDRESS) == 300
    charging = battery(60, 60, left_status=BatteryStatus.CHARGING)
    assert tracker.estimate_ttl(charging, None, TEST_ADDRESS) is None
    assert tracker.last_ttl_estimate is None


def test_historical_estimate(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE, 12.5, 10)
    tracker = BatteryTracker(study)
    # Falls back through the modes to find the ACTIVE record.
    assert tracker.estimate_ttl(battery(50, 50), NoiseControlMode.OFF, TEST_ADDRESS) == 240


def test_unreasonable_estimate(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.OFF, 1.0, 10)
    tracker = BatteryTracker(study)
    assert tracker.estimate_ttl(battery(50, 50), NoiseControlMode.OFF, TEST_ADDRESS) is None


def test_integration_with_study(study):
    tracker = BatteryTracker(study)
    tracker.init_session(TEST_ADDRESS, "Test AirPods")
    fill_left(tracker, 10)
    tracker.save_to_study(TEST_ADDRESS, NoiseControlMode.ACTIVE)

    rate, confidence = study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE)
    assert rate == pytest.approx(12.0)
    assert confidence == 0.0
    assert study.get_or_create_study(TEST_ADDRESS, "x").total_samples == 10
    assert len(tracker.left_history) == 5


def test_save_without_study_trims_history():
    tracker = BatteryTracker(None)
    fill_left(tracker, 8)
    tracker.save_to_study(TEST_ADDRESS, NoiseControlMode.OFF)
    assert [level for _, level in tracker.left_history] == [90, 88, 86, 84, 82]


def test_init_session_creates_study(study):
    tracker = BatteryTracker(study)
    tracker.init_session(TEST_ADDRESS, "Test AirPods")
    tracker.init_session(TEST_ADDRESS, "Test AirPods")
    stored = study.get_or_create_study(TEST_ADDRESS, "other")
    assert stored.device_name == "Test AirPods"
    assert stored.total_sessions == 1


def test_should_save():
    tracker = BatteryTracker(None)
    info = battery(80, 80)
    assert tracker.should_save(30, info) is False

    for i in range(10):
        level = 100 - i
        tracker.record_battery_drop(mock_state(level), mock_state(level))
    assert tracker.should_save(0, info) is True
    assert tracker.should_save(60, info) is False
    charging = battery(80, 80, right_status=BatteryStatus.CHARGING)
    assert tracker.should_save(0, charging) is False


def test_combine_neither():
    assert combine_drain_rates(None, None, 0) is None


def test_combine_local_only():
    assert combine_drain_rates((10.0, 0.1), None, 5) == (10.0, 0.1)


@pytest.mark.parametrize(
    "confidence, alpha", [(3.0, 0.5), (10.0, 0.7), (math.inf, 0.7)]
)
def test_combine_historical_only(confidence, alpha):
    assert combine_drain_rates(None, (20.0, confidence), 0) == (20.0, alpha)


def test_combine_few_local_samples_uses_historical():
    rate, alpha = combine_drain_rates((10.0, 0.1), (20.0, 1.5), 3)
    assert rate == pytest.approx(20.0)
    assert alpha == pytest.approx(0.3)


def test_combine_many_local_samples():
    rate, alpha = combine_drain_rates((10.0, 0.3), (20.0, 1.5), 20)
    assert rate == pytest.approx(11.0)
    assert alpha == pytest.approx(0.48)


def test_combine_high_confidence_history():
    rate, alpha = combine_drain_rates((10.0, 0.1), (20.0, 0.5), 5)
    assert rate == pytest.approx(14.4)
    assert alpha == pytest.approx(0.412)


def test_combine_low_confidence_history():
    rate, alpha = combine_drain_rates((10.0, 0.1), (20.0, 3.0), 5)
    assert rate == pytest.approx(11.5)
    assert alpha == pytest.approx(0.47)