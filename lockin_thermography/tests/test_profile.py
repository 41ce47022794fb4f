"""Tests for LockInProfile, result containers and the temperature converter."""

from __future__ import annotations

import dataclasses
import json

import numpy as np
import pytest

from lockin_thermography.analysis.lockin import LockInAccumulator
from lockin_thermography.analysis.temperature import LinearTemperatureConverter
from lockin_thermography.errors import InvalidArgumentError, LockInError
from lockin_thermography.models.profile import LockInProfile
from lockin_thermography.models.results import LockInProgress, LockInResult


# -----------------------------------------------------------------------
# LockInProfile
# -----------------------------------------------------------------------


def test_profile_defaults() -> None:
    p = LockInProfile(frequency_hz=1.0, duration_s=60.0)
    assert p.meta_rows == 0
    assert p.duty_cycle == 0.5
    assert p.settle_s is None
    assert p.integration_s is None
    assert p.progress_interval_ms == 100
    assert p.phase_bins == 36
    assert p.track_dc is True


def test_profile_frozen_and_replace() -> None:
    p = LockInProfile(frequency_hz=1.0, duration_s=60.0)
    with pytest.raises(dataclasses.FrozenInstanceError):
        p.frequency_hz = 2.0  # type: ignore[misc]

    p2 = dataclasses.replace(p, frequency_hz=0.5)
    assert p2.frequency_hz == 0.5
    assert p2.duration_s == 60.0


def test_profile_derived_timing() -> None:
    p = LockInProfile(frequency_hz=0.5, duration_s=60.0, duty_cycle=0.25)
    assert p.period_s == pytest.approx(2.0)
    assert p.on_time_s == pytest.approx(0.5)
    assert p.off_time_s == pytest.approx(1.5)


def test_profile_dict_roundtrip_through_json() -> None:
    p = LockInProfile(frequency_hz=2.0, duration_s=30.0, meta_rows=4, settle_s=1.5, integration_s=0.1)
    restored = LockInProfile.from_dict(json.loads(json.dumps(p.to_dict())))
    assert restored == p


def test_profile_from_dict_rejects_unknown_keys() -> None:
    with pytest.raises(TypeError):
        LockInProfile.from_dict({"frequency_hz": 1.0, "duration_s": 1.0, "colour": "red"})


def test_profile_check_clean() -> None:
    assert LockInProfile(frequency_hz=1.0, duration_s=60.0, integration_s=0.1).check() == ()


def test_profile_check_warnings() -> None:
    p = LockInProfile(frequency_hz=5.0, duration_s=0.1, settle_s=0.5, integration_s=0.2)
    warnings = p.check()
    assert len(warnings) == 3
    assert any("integration_s" in w for w in warnings)
    assert any("less than one stimulus period" in w for w in warnings)
    assert any("never turn on" in w for w in warnings)


# -----------------------------------------------------------------------
# Progress / result containers
# -----------------------------------------------------------------------


def test_progress_percent() -> None:
    p = LockInProgress(elapsed_s=2.5, total_s=10.0, frame_count=12, stimulus_on=True, frequency_hz=1.0)
    assert p.percent == pytest.approx(25.0)
    assert LockInProgress(1.0, 0.0, 0, False, 1.0).percent == 0.0


def test_result_summary() -> None:
    acc = LockInAccumulator(4, 3, frequency_hz=2.0, meta_rows=1, phase_bins=6)
    res = LockInResult(accumulator=acc, duration_s=5.0, frequency_hz=2.0, frame_count=0, cancelled=True)
    s = res.summary()

    assert s["cancelled"] is True
    assert s["sample_count"] == 0
    assert s["width"] == 4 and s["visible_height"] == 2
    assert s["phase_bins"] == 6
    json.dumps(s)


# -----------------------------------------------------------------------
# LinearTemperatureConverter
# -----------------------------------------------------------------------


def test_temperature_linear_and_clamped() -> None:
    conv = LinearTemperatureConverter(1000, 3000, 20.0, 120.0)
    out = conv(np.array([0, 1000, 2000, 3000, 65535], dtype=np.uint16))
    np.testing.assert_allclose(out, [20.0, 20.0, 70.0, 120.0, 120.0])
    assert out.dtype == np.float64


def test_temperature_rejects_empty_raw_range() -> None:
    with pytest.raises(InvalidArgumentError):
        LinearTemperatureConverter(100, 100, 0.0, 1.0)
    # Also catchable as the package base error and as ValueError.
    with pytest.raises(LockInError):
        LinearTemperatureConverter(200, 100, 0.0, 1.0)
    with pytest.raises(ValueError):
        LinearTemperatureConverter(200, 100, 0.0, 1.0)
