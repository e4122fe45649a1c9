"""Per-sample signal filters for the detection pipeline.

Everything here is stateful, single-consumer and cheap enough to run on every
motion frame. No numpy: each call handles exactly one sample.
"""

from __future__ import annotations

import math

from roadsense.core.models import MotionFrame, ProcessedMotion

STANDARD_GRAVITY = 9.81

# Replacement for non-positive cutoffs and sample intervals.
_EPSILON = 0.0001


def _rc(cutoff_hz: float) -> float:
    safe_cutoff = cutoff_hz if cutoff_hz > 0 else _EPSILON
    return 1.0 / (2.0 * math.pi * safe_cutoff)


def high_pass_alpha(cutoff_hz: float, dt_seconds: float) -> float:
    """Smoothing factor of a first-order RC high-pass: rc / (rc + dt)."""
    rc = _rc(cutoff_hz)
    dt = dt_seconds if dt_seconds > 0 else _EPSILON
    return rc / (rc + dt)


def low_pass_alpha(cutoff_hz: float, dt_seconds: float) -> float:
    """Smoothing factor of a first-order RC low-pass: dt / (rc + dt)."""
    rc = _rc(cutoff_hz)
    dt = dt_seconds if dt_seconds > 0 else _EPSILON
    return dt / (rc + dt)


class HighPassFilter:
    """First-order IIR high-pass: y[n] = alpha * (y[n-1] + x[n] - x[n-1])."""

    def __init__(self, cutoff_hz: float = 1.0, initial_input: float = 0.0,
                 initial_output: float = 0.0) -> None:
        self.cutoff_hz = cutoff_hz
        self._prev_input = initial_input
        self._prev_output = initial_output

    def update(self, value: float, dt_seconds: float) -> float:
        alpha = high_pass_alpha(self.cutoff_hz, dt_seconds)
        output = alpha * (self._prev_output + value - self._prev_input)
        self._prev_input = value
        self._prev_output = output
        return output

    def reset(self, input: float = 0.0, output: float = 0.0) -> None:
        self._prev_input = input
        self._prev_output = output

    @property
    def previous_input(self) -> float:
        return self._prev_input

    @property
    def previous_output(self) -> float:
        return self._prev_output


class GravityEstimator:
    """Tracks the slow-moving gravity vector with a per-axis low-pass filter.

    The estimate starts at (0, 0, 9.81), i.e. a device lying flat, and follows
    the accelerometer as the device is rotated.
    """

    def __init__(self, cutoff_hz: float = 0.8,
                 initial: tuple[float, float, float] = (0.0, 0.0, STANDARD_GRAVITY)) -> None:
        self.cutoff_hz = cutoff_hz
        self._initial = initial
        self._gx, self._gy, self._gz = initial

    def update(self, ax: float, ay: float, az: float,
               dt_seconds: float) -> tuple[float, float, float]:
        a = low_pass_alpha(self.cutoff_hz, dt_seconds)
        self._gx += a * (ax - self._gx)
        self._gy += a * (ay - self._gy)
        self._gz += a * (az - self._gz)
        return self._gx, self._gy, self._gz

    def reset(self) -> None:
        self._gx, self._gy, self._gz = self._initial

    @property
    def value(self) -> tuple[float, float, float]:
        return self._gx, self._gy, self._gz


class VerticalAccelerationEstimator:
    """Orientation-independent vertical acceleration.

    Returns (a - g) . unit(g): linear acceleration projected on the current
    gravity estimate, so the result is the same whichever device axis points
    down.
    """

    def __init__(self, gravity_cutoff_hz: float = 0.8) -> None:
        self._gravity = GravityEstimator(cutoff_hz=gravity_cutoff_hz)

    def update(self, ax: float, ay: float, az: float, dt_seconds: float) -> float:
        gx, gy, gz = self._gravity.update(ax, ay, az, dt_seconds)

        g_mag = math.sqrt(gx * gx + gy * gy + gz * gz)
        if g_mag < 1e-6:
            return 0.0

        lx, ly, lz = ax - gx, ay - gy, az - gz
        return (lx * gx + ly * gy + lz * gz) / g_mag

    def process(self, frame: MotionFrame, dt_seconds: float) -> ProcessedMotion:
        vertical = self.update(frame.ax, frame.ay, frame.az, dt_seconds)
        return ProcessedMotion(timestamp_ms=frame.timestamp_ms, vertical_accel=vertical)

    def reset(self) -> None:
        self._gravity.reset()

    @property
    def gravity(self) -> tuple[float, float, float]:
        return self._gravity.value


def magnitude_deviation(frame: MotionFrame) -> float:
    """|‖a‖ - 9.81|: raw deviation from standard gravity, no filtering."""
    mag = math.sqrt(frame.ax * frame.ax + frame.ay * frame.ay + frame.az * frame.az)
    return abs(mag - STANDARD_GRAVITY)
