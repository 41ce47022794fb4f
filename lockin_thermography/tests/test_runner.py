"""Tests for the lock-in measurement runner.

These run real threads against in-process frame sources, so the durations are
kept short and the assertions tolerant of scheduling jitter.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import List

import numpy as np
import pytest

from lockin_thermography.acquisition.broadcast import FrameBroadcaster
from lockin_thermography.acquisition.runner import (
    DirectIngest,
    IntegratingIngest,
    IntegrationBuffer,
    IntegrationState,
    LockInMeasurementRunner,
    safe_turn_off,
)
from lockin_thermography.acquisition.simulator import SimulatedStimulus, SyntheticThermalSource
from lockin_thermography.errors import InvalidArgumentError, NoSamplesError, ShapeMismatchError
from lockin_thermography.models.frames import Frame
from lockin_thermography.models.profile import LockInProfile


class _DirectSource:
    """Minimal source that calls subscribers without any exception guard."""

    def __init__(self, width: int = 4, height: int = 4):
        self.width = width
        self.height = height
        self.callbacks: List = []
        self.errors: List[BaseException] = []
        self._stop = threading.Event()
        self._thread = None

    def subscribe(self, callback) -> None:
        self.callbacks.append(callback)

    def unsubscribe(self, callback) -> None:
        if callback in self.callbacks:
            self.callbacks.remove(callback)

    def _loop(self) -> None:
        k = 0
        while not self._stop.wait(0.005):
            frame = Frame(width=self.width, height=self.height, raw=np.full(self.width * self.height, k % 100, dtype=np.uint16))
            for cb in list(self.callbacks):
                try:
                    cb(frame)
                except BaseException as exc:
                    self.errors.append(exc)
            k += 1

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()


@pytest.fixture
def stimulus() -> SimulatedStimulus:
    return SimulatedStimulus()


@pytest.fixture
def thermal(stimulus):
    src = SyntheticThermalSource(
        16,
        12,
        fps=100.0,
        stimulus=stimulus,
        baseline=100.0,
        heat_amplitude=500.0,
        tau_s=0.01,
        noise_sigma=2.0,
        seed=3,
    )
    src.start()
    yield src
    src.stop()


@pytest.fixture
def direct_source():
    src = _DirectSource()
    src.start()
    yield src
    src.stop()


# -----------------------------------------------------------------------
# Parameter validation
# -----------------------------------------------------------------------


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(frequency_hz=0.0, duration_s=1.0),
        dict(frequency_hz=1.0, duration_s=0.0),
        dict(frequency_hz=1.0, duration_s=1.0, duty_cycle=0.0),
        dict(frequency_hz=1.0, duration_s=1.0, duty_cycle=1.0),
        dict(frequency_hz=1.0, duration_s=1.0, progress_interval_ms=0),
        dict(frequency_hz=1.0, duration_s=1.0, integration_s=0.0),
        dict(frequency_hz=1.0, duration_s=1.0, settle_s=-1.0),
    ],
)
def test_invalid_parameters_start_nothing(kwargs, stimulus) -> None:
    source = FrameBroadcaster(4, 4)
    with pytest.raises(InvalidArgumentError):
        LockInMeasurementRunner(source).run(stimulus, **kwargs)
    assert stimulus.calls == []
    assert source.subscriber_count == 0


# -----------------------------------------------------------------------
# Normal operation
# -----------------------------------------------------------------------


def test_run_detects_hot_spot(thermal, stimulus) -> None:
    reports = []
    result = LockInMeasurementRunner(thermal).run(
        stimulus, 5.0, 1.0, progress=reports.append, progress_interval_ms=50
    )

    assert not result.cancelled
    assert result.frame_count > 20
    assert result.dropped_frames == 0
    assert result.elapsed_s >= 1.0

    assert stimulus.calls[0] == "on"
    assert stimulus.calls[-1] == "off"
    assert not stimulus.is_on
    assert thermal.subscriber_count == 0

    acc = result.accumulator
    amp = acc.get_amplitude().reshape(acc.visible_height, acc.width)
    hot = thermal.hot_mask
    assert amp[hot].mean() > 5.0 * amp[~hot].mean()
    assert acc.count_on.sum() > 0 and acc.count_off.sum() > 0

    assert reports
    assert reports[-1].percent == pytest.approx(100.0)
    counts = [r.frame_count for r in reports]
    assert counts == sorted(counts)


def test_integration_mode_accumulates_window_means(thermal, stimulus) -> None:
    result = LockInMeasurementRunner(thermal).run(stimulus, 2.0, 1.0, integration_s=0.05)

    assert 5 <= result.frame_count <= 30
    assert result.frame_count < thermal.published_frames
    assert result.dropped_frames == 0


def test_run_profile_logs_profile_warnings(thermal, stimulus, caplog) -> None:
    profile = LockInProfile(frequency_hz=5.0, duration_s=0.2, integration_s=0.15)
    with caplog.at_level(logging.WARNING, logger="lockin_thermography.acquisition.runner"):
        result = LockInMeasurementRunner(thermal).run_profile(stimulus, profile)

    assert any("Lock-in profile" in rec.getMessage() for rec in caplog.records)
    assert result.frequency_hz == 5.0
    assert stimulus.calls[-1] == "off"


def test_no_frames_gives_empty_result(stimulus) -> None:
    source = FrameBroadcaster(4, 4)  # never publishes
    result = LockInMeasurementRunner(source).run(stimulus, 10.0, 0.1)

    assert result.frame_count == 0
    assert result.accumulator.sample_count == 0
    with pytest.raises(NoSamplesError):
        result.accumulator.get_amplitude()


# -----------------------------------------------------------------------
# Stimulus safety
# -----------------------------------------------------------------------


def test_settle_longer_than_duration_never_turns_on(direct_source, stimulus) -> None:
    result = LockInMeasurementRunner(direct_source).run(stimulus, 5.0, 0.1, settle_s=0.2)

    assert "on" not in stimulus.calls
    assert stimulus.calls[-1] == "off"
    assert not result.cancelled


def test_cancel_mid_run_turns_stimulus_off(thermal, stimulus) -> None:
    cancel = threading.Event()
    timer = threading.Timer(0.15, cancel.set)
    timer.start()
    t0 = time.perf_counter()
    try:
        result = LockInMeasurementRunner(thermal).run(stimulus, 2.0, 5.0, cancel=cancel)
    finally:
        timer.cancel()

    assert result.cancelled
    assert time.perf_counter() - t0 < 2.0
    assert "on" in stimulus.calls
    assert stimulus.calls[-1] == "off"
    assert not stimulus.is_on
    assert thermal.subscriber_count == 0


def test_cancel_during_settle(direct_source, stimulus) -> None:
    cancel = threading.Event()
    cancel.set()
    result = LockInMeasurementRunner(direct_source).run(stimulus, 1.0, 1.0, settle_s=1.0, cancel=cancel)

    assert result.cancelled
    assert result.frame_count == 0
    # Toggling never started: only the exit turn-off runs.
    assert stimulus.calls == ["off"]
    assert direct_source.callbacks == []


def test_stimulus_exception_is_reraised_after_turn_off(thermal) -> None:
    stim = SimulatedStimulus(raise_on=RuntimeError("relay stuck"))
    with pytest.raises(RuntimeError, match="relay stuck"):
        LockInMeasurementRunner(thermal).run(stim, 5.0, 2.0)

    assert stim.calls[0] == "on"
    assert stim.calls[-1] == "off"
    assert thermal.subscriber_count == 0


def test_failed_turn_on_keeps_flag_off(thermal) -> None:
    stim = SimulatedStimulus(fail_on=True)
    result = LockInMeasurementRunner(thermal).run(stim, 5.0, 0.5)

    assert not result.cancelled
    assert stim.calls.count("on") >= 1
    assert stim.calls[-1] == "off"
    acc = result.accumulator
    assert acc.count_on.sum() == 0
    assert acc.count_off.sum() == result.frame_count


def test_safe_turn_off_never_raises() -> None:
    class _Broken:
        def turn_off(self, cancel):
            raise OSError("device gone")

    assert safe_turn_off(_Broken(), "test") is False
    assert safe_turn_off(SimulatedStimulus(fail_off=True), "test") is False
    assert safe_turn_off(SimulatedStimulus(), "test") is True


# -----------------------------------------------------------------------
# Frame ingestion
# -----------------------------------------------------------------------


def test_slow_frame_in_flight_finishes_before_result(stimulus) -> None:
    source = FrameBroadcaster(4, 4)
    source.start()

    def slow(frame: Frame) -> Frame:
        time.sleep(0.3)
        return frame

    def feed() -> None:
        time.sleep(0.05)
        source.publish(Frame(width=4, height=4, raw=np.ones(16, dtype=np.uint16)))

    feeder = threading.Thread(target=feed)
    feeder.start()
    result = LockInMeasurementRunner(source).run(stimulus, 5.0, 0.1, frame_preprocess=slow)
    at_return = result.accumulator.sample_count
    feeder.join()

    assert result.frame_count == 1
    assert at_return == result.frame_count
    assert result.accumulator.sample_count == at_return
    assert source.subscriber_count == 0


def test_frames_after_close_are_ignored(stimulus) -> None:
    source = FrameBroadcaster(4, 4)
    source.start()
    callbacks = []
    real_subscribe = source.subscribe

    def record(callback) -> None:
        callbacks.append(callback)
        real_subscribe(callback)

    source.subscribe = record  # type: ignore[method-assign]
    result = LockInMeasurementRunner(source).run(stimulus, 5.0, 0.05)

    # A publisher holding a stale subscriber snapshot must not reach the result.
    callbacks[0](Frame(width=4, height=4, raw=np.ones(16, dtype=np.uint16)))
    assert result.accumulator.sample_count == 0
    assert result.frame_count == 0


def test_preprocess_errors_drop_frames_only(direct_source, stimulus) -> None:
    calls = {"n": 0}

    def flaky(frame: Frame) -> Frame:
        calls["n"] += 1
        if calls["n"] % 2:
            raise ValueError("bad frame")
        return frame

    result = LockInMeasurementRunner(direct_source).run(stimulus, 5.0, 0.3, frame_preprocess=flaky)

    assert result.dropped_frames > 0
    assert result.frame_count > 0
    assert direct_source.errors == []
    assert direct_source.callbacks == []


def test_wrong_frame_geometry_is_dropped(stimulus) -> None:
    source = FrameBroadcaster(4, 4)
    runner = LockInMeasurementRunner(source)
    source.start()

    def feed() -> None:
        time.sleep(0.05)
        source.publish(Frame(width=2, height=2, raw=np.zeros(4, dtype=np.uint16)))
        source.publish(Frame(width=4, height=4, raw=np.zeros(16, dtype=np.uint16)))

    feeder = threading.Thread(target=feed)
    feeder.start()
    result = runner.run(stimulus, 5.0, 0.2)
    feeder.join()

    assert result.dropped_frames == 1
    assert result.frame_count == 1


def test_direct_ingest_passes_through() -> None:
    f = Frame(width=2, height=1, raw=np.array([1, 2], dtype=np.uint16))
    assert DirectIngest().feed(f, 1.5) == (f, 1.5)


def test_integration_buffer_state_machine() -> None:
    buf = IntegrationBuffer(2, 2, 0, integration_s=1.0, start_s=0.0)
    assert buf.state(0.5) is IntegrationState.IDLE
    assert buf.state(5.0) is IntegrationState.IDLE

    f10 = Frame(width=2, height=2, raw=np.full(4, 10, dtype=np.uint16))
    f21 = Frame(width=2, height=2, raw=np.full(4, 21, dtype=np.uint16))
    assert buf.add(f10, 0.2) is IntegrationState.ACCUMULATING
    assert buf.add(f21, 0.6) is IntegrationState.ACCUMULATING
    assert buf.state(1.0) is IntegrationState.READY

    mean, t_mid = buf.flush(1.0)
    np.testing.assert_array_equal(mean.raw, [15, 15, 15, 15])
    assert t_mid == pytest.approx(0.5)
    assert buf.count == 0
    assert buf.state(1.5) is IntegrationState.IDLE

    with pytest.raises(ShapeMismatchError):
        buf.add(Frame(width=1, height=1, raw=np.zeros(1, dtype=np.uint16)), 1.2)


def test_integrating_ingest_emits_once_per_window() -> None:
    ingest = IntegratingIngest(IntegrationBuffer(2, 3, 1, integration_s=0.1, start_s=0.0))
    frame = Frame(width=2, height=3, raw=np.arange(6, dtype=np.uint16), meta_rows=1)

    assert ingest.feed(frame, 0.03) is None
    assert ingest.feed(frame, 0.06) is None
    out = ingest.feed(frame, 0.1)
    assert out is not None
    mean, t_mid = out
    # Full geometry (metadata rows included) so it fits the accumulator.
    assert (mean.width, mean.height, mean.meta_rows) == (2, 3, 1)
    np.testing.assert_array_equal(mean.raw, np.arange(6))
    assert t_mid == pytest.approx(0.05)
    assert ingest.feed(frame, 0.12) is None
