"""Pothole detection engines.

An engine takes one motion frame plus the last known location fix (if any)
and returns a PotholeEvent or None. None is the normal result for almost
every frame.

The rule-based engine is the decision authority. The refinement engine wraps
it and can only confirm a positive decision; it never creates a detection
the rule engine rejected.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Protocol

import structlog

from roadsense.core.models import PotholeEvent, Severity, VehicleType
from roadsense.detection.filters import (
    HighPassFilter,
    VerticalAccelerationEstimator,
    magnitude_deviation,
)

if TYPE_CHECKING:
    from roadsense.config import DetectionConfig
    from roadsense.core.models import LocationFix, MotionFrame

log = structlog.get_logger()

# Sample interval assumed for the first frame or a non-increasing timestamp (~50 Hz).
DEFAULT_DT_SECONDS = 0.02

# (low, medium, high) amplitude thresholds in m/s^2: (normal, minimal filtering).
_THRESHOLDS: dict[VehicleType, tuple[tuple[float, float, float], tuple[float, float, float]]] = {
    VehicleType.CAR: ((3.0, 6.0, 9.0), (1.5, 3.0, 4.5)),
    VehicleType.BIKE: ((2.0, 4.0, 6.0), (1.0, 2.0, 3.0)),
}


class DetectorMode(str, Enum):
    RULE_ONLY = "rule_only"
    RULE_PLUS_REFINEMENT = "rule_plus_refinement"


class DetectionEngine(Protocol):
    """Port: decides whether a single frame is a pothole impact."""

    def evaluate(self, frame: MotionFrame,
                 location: LocationFix | None = None) -> PotholeEvent | None: ...


def thresholds_for(vehicle_type: VehicleType, minimal_filtering: bool = False) -> tuple[float, float, float]:
    normal, minimal = _THRESHOLDS[vehicle_type]
    return minimal if minimal_filtering else normal


def classify(amplitude: float, thresholds: tuple[float, float, float]) -> tuple[Severity, float] | None:
    """Map an amplitude to (severity, confidence), or None below the low threshold."""
    low, medium, high = thresholds
    if amplitude < low:
        return None

    if amplitude >= high:
        severity = Severity.HIGH
    elif amplitude >= medium:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW

    normalized = (amplitude - low) / max(0.0001, high - low)
    confidence = 0.6 + 0.4 * min(max(normalized, 0.0), 1.0)
    return severity, confidence


class RuleBasedDetector:
    """Default detection engine.

    Per frame:

    1. Derive dt from the previous frame timestamp (0.02 s fallback).
    2. Compute the amplitude: |high-pass(vertical acceleration)|, or in
       minimal-filtering mode the raw |‖a‖ - g| with both filters bypassed.
    3. Speed gate: a known speed under ``min_speed_kmh`` rejects the frame.
    4. Cooldown gate: rejects frames within ``cooldown_ms`` of the last detection.
    5. Classify against the vehicle thresholds.

    Filters are updated before the gates so their state follows the stream
    continuously, whether or not a given frame can trigger.

    Not thread-safe. One instance belongs to one orchestrator.
    """

    def __init__(
        self,
        vehicle_type: VehicleType | str = VehicleType.CAR,
        high_pass_cutoff_hz: float = 1.0,
        gravity_cutoff_hz: float = 0.8,
        cooldown_ms: int = 900,
        min_speed_kmh: float = 5.0,
        minimal_filtering: bool = False,
        debug: bool = False,
    ) -> None:
        self.vehicle_type = VehicleType(vehicle_type)
        self.high_pass_cutoff_hz = high_pass_cutoff_hz
        self.cooldown_ms = cooldown_ms
        self.min_speed_kmh = min_speed_kmh
        self.minimal_filtering = minimal_filtering
        self.debug = debug

        self._hp = HighPassFilter(cutoff_hz=high_pass_cutoff_hz)
        self._vertical = VerticalAccelerationEstimator(gravity_cutoff_hz=gravity_cutoff_hz)
        self._prev_timestamp_ms: int | None = None
        self._last_detection_ms: int | None = None

    @classmethod
    def from_config(cls, config: DetectionConfig) -> RuleBasedDetector:
        return cls(
            vehicle_type=config.vehicle_type,
            high_pass_cutoff_hz=config.high_pass_cutoff_hz,
            gravity_cutoff_hz=config.gravity_cutoff_hz,
            cooldown_ms=config.cooldown_ms,
            min_speed_kmh=config.min_speed_kmh,
            minimal_filtering=config.minimal_filtering,
            debug=config.debug,
        )

    @property
    def thresholds(self) -> tuple[float, float, float]:
        return thresholds_for(self.vehicle_type, self.minimal_filtering)

    @property
    def last_detection_ms(self) -> int | None:
        return self._last_detection_ms

    def evaluate(self, frame: MotionFrame,
                 location: LocationFix | None = None) -> PotholeEvent | None:
        dt = self._dt_seconds(frame.timestamp_ms)
        amplitude = self._amplitude(frame, dt)

        speed_kmh = location.speed_kmh if location is not None else None
        if speed_kmh is not None and speed_kmh < self.min_speed_kmh:
            return None

        if (self._last_detection_ms is not None
                and frame.timestamp_ms - self._last_detection_ms < self.cooldown_ms):
            return None

        result = classify(amplitude, self.thresholds)
        if self.debug:
            log.debug("detector_evaluated", amplitude=round(amplitude, 3),
                      thresholds=self.thresholds,
                      severity=result[0].label if result else None)
        if result is None:
            return None

        severity, confidence = result
        self._last_detection_ms = frame.timestamp_ms
        return PotholeEvent(
            timestamp_ms=frame.timestamp_ms,
            severity=severity,
            confidence=confidence,
            latitude=location.latitude if location is not None else None,
            longitude=location.longitude if location is not None else None,
        )

    def reset(self) -> None:
        self._hp.reset()
        self._vertical.reset()
        self._prev_timestamp_ms = None
        self._last_detection_ms = None

    def _amplitude(self, frame: MotionFrame, dt: float) -> float:
        if self.minimal_filtering:
            return magnitude_deviation(frame)
        processed = self._vertical.process(frame, dt)
        return abs(self._hp.update(processed.vertical_accel, dt))

    def _dt_seconds(self, timestamp_ms: int) -> float:
        prev = self._prev_timestamp_ms
        self._prev_timestamp_ms = timestamp_ms
        if prev is None or timestamp_ms <= prev:
            return DEFAULT_DT_SECONDS
        return (timestamp_ms - prev) / 1000.0


class RefinementDetector:
    """Confirm-only stage on top of a base engine.

    Runs only on a positive base decision and currently forwards it unchanged.
    """

    def __init__(self, base: DetectionEngine) -> None:
        self.base = base

    def evaluate(self, frame: MotionFrame,
                 location: LocationFix | None = None) -> PotholeEvent | None:
        event = self.base.evaluate(frame, location)
        if event is None:
            return None
        return self._refine(event)

    def _refine(self, event: PotholeEvent) -> PotholeEvent:
        # TODO: plug a trained classifier here; it may drop `event` but never lower its severity.
        return event
