"""Tests for the per-sample signal filters."""

from __future__ import annotations

import math

import pytest

from roadsense.core.models import MotionFrame
from roadsense.detection.filters import (
    GravityEstimator,
    HighPassFilter,
    VerticalAccelerationEstimator,
    high_pass_alpha,
    low_pass_alpha,
    magnitude_deviation,
)

G = 9.81
DT = 0.02


def test_alphas_match_rc_formula():
    rc = 1.0 / (2.0 * math.pi * 1.0)
    assert high_pass_alpha(1.0, DT) == pytest.approx(rc / (rc + DT))
    assert low_pass_alpha(1.0, DT) == pytest.approx(DT / (rc + DT))
    assert high_pass_alpha(1.0, DT) + low_pass_alpha(1.0, DT) == pytest.approx(1.0)


@pytest.mark.parametrize("cutoff,dt", [(0.0, DT), (-1.0, DT), (1.0, 0.0), (1.0, -0.5)])
def test_alphas_guard_non_positive_inputs(cutoff, dt):
    for alpha in (high_pass_alpha(cutoff, dt), low_pass_alpha(cutoff, dt)):
        assert math.isfinite(alpha)
        assert 0.0 <= alpha <= 1.0


def test_gravity_estimator_starts_flat_and_converges():
    est = GravityEstimator()
    assert est.value == (0.0, 0.0, G)

    for _ in range(300):
        gx, gy, gz = est.update(G, 0.0, 0.0, DT)

    assert gx == pytest.approx(G, abs=1e-3)
    assert gy == pytest.approx(0.0, abs=1e-9)
    assert gz == pytest.approx(0.0, abs=1e-3)

    est.reset()
    assert est.value == (0.0, 0.0, G)


def test_vertical_estimator_zero_at_rest():
    est = VerticalAccelerationEstimator()
    for _ in range(50):
        v = est.update(0.0, 0.0, G, DT)
    assert v == pytest.approx(0.0, abs=1e-9)


def test_vertical_estimator_degenerate_gravity_returns_zero():
    est = VerticalAccelerationEstimator()
    # Drive the gravity estimate to the origin.
    for _ in range(500):
        est.update(0.0, 0.0, 0.0, DT)
    assert est.update(0.0, 0.0, 0.0, DT) == 0.0


@pytest.mark.parametrize("axis", [0, 1, 2])
def test_vertical_estimator_is_orientation_independent(axis):
    est = VerticalAccelerationEstimator()
    rest = [0.0, 0.0, 0.0]
    rest[axis] = G
    for _ in range(300):
        est.update(*rest, DT)

    bump = list(rest)
    bump[axis] = G + 10.0
    v = est.update(*bump, DT)

    alpha = low_pass_alpha(0.8, DT)
    assert v == pytest.approx(10.0 * (1 - alpha), rel=1e-3)


def test_vertical_estimator_process_keeps_timestamp():
    est = VerticalAccelerationEstimator()
    processed = est.process(MotionFrame(timestamp_ms=1234, ax=0.0, ay=0.0, az=G), DT)
    assert processed.timestamp_ms == 1234
    assert processed.vertical_accel == pytest.approx(0.0)


def test_high_pass_removes_constant_offset():
    hp = HighPassFilter(cutoff_hz=1.0)
    out = None
    for _ in range(500):
        out = hp.update(3.0, DT)
    assert out == pytest.approx(0.0, abs=1e-6)


def test_high_pass_passes_step_edge():
    hp = HighPassFilter(cutoff_hz=1.0)
    hp.update(0.0, DT)
    out = hp.update(5.0, DT)
    assert out == pytest.approx(high_pass_alpha(1.0, DT) * 5.0)


def test_high_pass_reset_reseeds_state():
    hp = HighPassFilter()
    hp.update(4.0, DT)
    hp.reset(input=2.0, output=1.0)
    assert hp.previous_input == 2.0
    assert hp.previous_output == 1.0
    out = hp.update(2.0, DT)
    assert out == pytest.approx(high_pass_alpha(1.0, DT) * 1.0)


def test_magnitude_deviation():
    assert magnitude_deviation(MotionFrame(0, 0.0, 0.0, G)) == pytest.approx(0.0)
    assert magnitude_deviation(MotionFrame(0, 3.0, 4.0, 0.0)) == pytest.approx(abs(5.0 - G))
    assert magnitude_deviation(MotionFrame(0, 0.0, G + 2.0, 0.0)) == pytest.approx(2.0)
