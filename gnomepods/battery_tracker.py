"""Live battery monitoring that feeds and draws on the long-term battery study."""

from __future__ import annotations

import logging
import math
import sys
import threading
import time

from .battery_study import MIN_SAMPLES_TO_SAVE, BatteryHistory, BatteryStudy
from .errors import BatteryStudyError
from .protocol import Address, BatteryInfo, BatteryState, NoiseControlMap, NoiseControlMode

log = logging.getLogger(__name__)

_LOCAL_MIN_SAMPLES = 4
_LOCAL_MAX_AGE_HOURS = 2.0
_CACHE_DURATION = 300.0
_KEEP_COUNT = 5
_MAX_MINUTES = 24 * 60


def _round_half_away(value: float) -> int:
    return int(math.floor(value + 0.5)) if value >= 0 else -int(math.floor(-value + 0.5))


def combine_drain_rates(
    local_rate: tuple[float, float] | None,
    historical_rate: tuple[float, float] | None,
    local_sample_count: int,
) -> tuple[float, float] | None:
    """Blend a local ``(rate, alpha)`` and a historical ``(rate, confidence)``.

    Returns ``(rate, alpha)`` or None when neither is available.
    """
    if local_rate is not None and historical_rate is not None:
        local_r, _ = local_rate
        hist_r, hist_conf = historical_rate
        if local_sample_count < 4:
            local_weight = 0.0
        elif local_sample_count <= 10:
            local_weight = 0.7
        else:
            local_weight = 0.9

        if hist_conf < 1.0:
            weight = local_weight * 0.8
        elif hist_conf < 2.0:
            weight = local_weight
        else:
            weight = (1.0 - local_weight) * 0.5 + local_weight

        combined = local_r * weight + hist_r * (1.0 - weight)
        alpha = weight * 0.2 + 0.3
        log.debug(
            "Combined drain rate: %.1f%%/hr (local: %.1f%%/hr * %.0f%%, "
            "historical: %.1f%%/hr * %.0f%%)",
            combined,
            local_r,
            weight * 100.0,
            hist_r,
            (1.0 - weight) * 100.0,
        )
        return combined, alpha

    if local_rate is not None:
        log.debug("Using local drain rate only (no historical data)")
        return local_rate

    if historical_rate is not None:
        hist_r, hist_conf = historical_rate
        if hist_conf < 5.0:
            log.debug(
                "Using historical drain rate: %.1f%%/hr (confidence: ±%.1f)", hist_r, hist_conf
            )
            return hist_r, 0.5
        log.debug(
            "Using historical drain rate with low confidence: %.1f%%/hr (±%.1f)",
            hist_r,
            hist_conf,
        )
        return hist_r, 0.7

    return None


class BatteryTracker:
    """Tracks battery levels of both buds and estimates the time left."""

    def __init__(self, study: BatteryStudy | None = None) -> None:
        self.study = study
        self.left_history = BatteryHistory()
        self.right_history = BatteryHistory()
        self.last_ttl_estimate: int | None = None
        self._cache: NoiseControlMap[tuple[float, float, float]] = NoiseControlMap()
        self._cache_lock = threading.Lock()

    def init_session(self, address: Address, device_name: str) -> None:
        """Start a study session for a device, creating its study if needed."""
        if self.study is None:
            log.debug("No battery study available for session initialization")
            return
        log.debug("Initializing battery study session for %s (%s)", address, device_name)
        try:
            self.study.increment_session_count(address)
        except BatteryStudyError as exc:
            log.debug("Failed to increment session count: %s", exc)
        try:
            device_study = self.study.get_or_create_study(address, device_name)
        except BatteryStudyError as exc:
            log.debug("Failed to get/create battery study: %s", exc)
            return
        log.debug(
            "Battery study for %s: %d sessions, %d samples, %d modes tracked",
            address,
            device_study.total_sessions,
            device_study.total_samples,
            len(device_study.drain_rates),
        )

    def record_battery_drop(self, left: BatteryState, right: BatteryState) -> None:
        """Record new levels of both buds; a bud that starts charging resets its history."""
        now = time.monotonic()
        for name, state, history in (
            ("left", left, self.left_history),
            ("right", right, self.right_history),
        ):
            if not state.is_available():
                continue
            if state.is_charging():
                if history.last_level() is not None:
                    log.debug("%s bud started charging, clearing battery history", name)
                    history.clear()
            else:
                history.record_battery_drop(state.level, now)

    def _invalidate(self, reason: str, level: int = logging.DEBUG) -> None:
        if self.last_ttl_estimate is not None:
            log.log(level, "Battery TTL estimation unavailable: %s", reason)
            self.last_ttl_estimate = None

    def estimate_ttl(
        self,
        battery_info: BatteryInfo,
        noise_mode: NoiseControlMode | None,
        address: Address,
    ) -> int | None:
        """Minutes of battery left, smoothed against the previous estimate."""
        prev_estimate = self.last_ttl_estimate
        left, right = battery_info.split_ref()

        if left.is_charging() or right.is_charging():
            self._invalidate("AirPods are charging")
            return None
        if not left.is_available() or not right.is_available():
            self._invalidate("One or both buds disconnected")
            return None

        local = self._calculate_local_drain_rate()
        if local is not None:
            local_rate: tuple[float, float] | None = (local[0], local[1])
            local_count = local[2]
        else:
            local_rate, local_count = None, 0

        modes = ([noise_mode] if noise_mode is not None else []) + list(NoiseControlMode)
        historical_rate = None
        used_mode = None
        for mode in modes:
            rate = self._get_historical_rate_cached(address, mode)
            if rate is not None:
                historical_rate, used_mode = rate, mode
                break

        log.debug(
            "Battery TTL calculation - local: %s (samples: %d), historical: %s, mode: %s (used: %s)",
            None if local_rate is None else local_rate[0],
            local_count,
            None if historical_rate is None else historical_rate[0],
            noise_mode,
            used_mode,
        )

        combined = combine_drain_rates(local_rate, historical_rate, local_count)
        if combined is None:
            self._invalidate("No drain rate available", logging.INFO)
            return None
        drain_rate, alpha = combined

        if drain_rate <= sys.float_info.epsilon:
            self._invalidate("Drain rate is effectively zero")
            return None

        min_level = float(min(left.level, right.level))
        new_minutes = max(int(min_level / drain_rate * 60.0), 0)

        if not 0 < new_minutes < _MAX_MINUTES:
            self._invalidate(f"Unreasonable estimate ({new_minutes} minutes)")
            return None

        if prev_estimate is not None:
            smoothed = _round_half_away(new_minutes * alpha + prev_estimate * (1.0 - alpha))
        else:
            log.info("Battery TTL estimation now available: %d minutes remaining", new_minutes)
            smoothed = new_minutes
        self.last_ttl_estimate = smoothed
        return smoothed

    def _calculate_local_drain_rate(self) -> tuple[float, float, int] | None:
        max_age = time.monotonic() - _LOCAL_MAX_AGE_HOURS * 3600.0
        for history in (self.left_history, self.right_history):
            result = history.calculate_drain_rate(_LOCAL_MIN_SAMPLES, max_age)
            if result is not None:
                return result[0], result[1], len(history)
        return None

    def _get_historical_rate_cached(
        self, address: Address, mode: NoiseControlMode
    ) -> tuple[float, float] | None:
        with self._cache_lock:
            cached = self._cache.get(mode)
        if cached is not None:
            rate, confidence, stamp = cached
            if time.monotonic() - stamp < _CACHE_DURATION:
                return rate, confidence

        if self.study is None:
            log.debug("No battery study available")
            return None
        try:
            found = self.study.get_drain_rate(address, mode)
        except BatteryStudyError as exc:
            log.debug("Error getting historical drain rate: %s", exc)
            return None
        if found is None:
            log.debug("No historical drain rate found for %s mode %s", address, mode)
            return None
        rate, confidence = found
        log.debug(
            "Found historical drain rate for %s mode %s: %.1f%%/hr (confidence: ±%.1f)",
            address,
            mode,
            rate,
            confidence,
        )
        with self._cache_lock:
            self._cache.insert(mode, (rate, confidence, time.monotonic()))
        return rate, confidence

    def should_save(self, interval_minutes: int, battery_info: BatteryInfo) -> bool:
        """Whether enough samples and time have accumulated for a periodic save."""
        sample_count = max(len(self.left_history), len(self.right_history))
        if sample_count < MIN_SAMPLES_TO_SAVE:
            log.debug(
                "should_save: Not enough samples yet (have %d, need %d)",
                sample_count,
                MIN_SAMPLES_TO_SAVE,
            )
            return False

        left, right = battery_info.split_ref()
        if left.is_charging() or right.is_charging():
            log.debug(
                "should_save: AirPods are charging (left: %s, right: %s)",
                left.is_charging(),
                right.is_charging(),
            )
            return False

        stamps = [
            stamp
            for stamp in (
                self.left_history.oldest_timestamp(),
                self.right_history.oldest_timestamp(),
            )
            if stamp is not None
        ]
        if not stamps:
            log.debug("should_save: No timestamp samples available")
            return False

        elapsed = max(time.monotonic() - min(stamps), 0.0)
        required = float(interval_minutes * 60)
        result = elapsed >= required
        log.debug(
            "should_save: Elapsed: %.1fs, Required: %.1fs, Will save: %s",
            elapsed,
            required,
            result,
        )
        return result

    def save_to_study(self, address: Address, noise_mode: NoiseControlMode) -> None:
        """Store this session's drain rate in the study, then trim the history."""
        if self.study is not None:
            local = self._calculate_local_drain_rate()
            if local is not None:
                drain_rate, _alpha, sample_count = local
                if sample_count >= 4:
                    try:
                        self.study.update_drain_rate(
                            address, noise_mode, drain_rate, sample_count
                        )
                    except BatteryStudyError as exc:
                        log.debug("Failed to update drain rate: %s", exc)
                    log.info(
                        "Saved battery drain rate of %.1f%%/hr for mode %s with %d samples",
                        drain_rate,
                        noise_mode,
                        sample_count,
                    )
                    with self._cache_lock:
                        self._cache.remove(noise_mode)
        self._trim_history()

    def _trim_history(self) -> None:
        for history in (self.left_history, self.right_history):
            if len(history) > _KEEP_COUNT:
                history.truncate_front(_KEEP_COUNT)