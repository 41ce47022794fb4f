"""Lock-in measurement runner.

One run owns three concurrent activities:

1) Stimulus toggling (thread): square wave with the requested frequency and
   duty cycle, starting with ON, until the configured duration has elapsed.
2) Frame ingestion (callback on the frame source's thread): optional
   preprocessing, optional time integration, then
   :meth:`~lockin_thermography.analysis.lockin.LockInAccumulator.add_frame`.
3) Progress reporting (thread, optional).

All times are seconds on one stopwatch started when ``run`` is entered, so an
optional settle delay counts towards the toggling deadline.

Safety invariant: the stimulus is OFF when ``run`` returns or raises. It is
switched off when the wait ends (before any other cleanup), again when the
toggler exits, and once more on the way out. The cleanup calls ignore
cancellation and never raise.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable, Optional, Tuple, Union

import numpy as np

from lockin_thermography.acquisition.interfaces import (
    FrameSource,
    StimulusController,
    StimulusFlag,
    frame_subscription,
    never_cancelled,
)
from lockin_thermography.analysis.accumulate import check_frame_shape
from lockin_thermography.analysis.lockin import LockInAccumulator, SampleSelector
from lockin_thermography.errors import InvalidArgumentError
from lockin_thermography.models.frames import Frame
from lockin_thermography.models.profile import LockInProfile
from lockin_thermography.models.results import LockInProgress, LockInResult

logger = logging.getLogger(__name__)

FramePreprocess = Callable[[Frame], Frame]
ProgressSink = Callable[[LockInProgress], None]

# Granularity of the main wait when watching the cancel event.
POLL_INTERVAL_S = 0.01


def safe_turn_off(stimulus: StimulusController, where: str) -> bool:
    """Best-effort stimulus OFF that ignores cancellation and never raises."""
    try:
        ok = bool(stimulus.turn_off(threading.Event()))
    except Exception:
        logger.warning("Stimulus turn_off failed during %s", where, exc_info=True)
        return False
    if not ok:
        logger.warning("Stimulus turn_off reported failure during %s", where)
    return ok


# ----------------------------------------------------------------------
# Frame ingestion modes
# ----------------------------------------------------------------------


class IntegrationState(enum.Enum):
    IDLE = "idle"  # window open, no frame yet
    ACCUMULATING = "accumulating"  # window open, frames summed
    READY = "ready"  # window elapsed, flush pending


class IntegrationBuffer:
    """Sums full raw frames over a time window and emits their mean.

    The window opens at construction or at the previous flush. The mean frame
    keeps the input geometry (metadata rows included) so that it can be fed
    to an accumulator sized for the camera.
    """

    def __init__(self, width: int, height: int, meta_rows: int, integration_s: float, start_s: float):
        self.width = int(width)
        self.height = int(height)
        self.meta_rows = int(meta_rows)
        self.integration_s = float(integration_s)

        self._sum = np.zeros(self.width * self.height, dtype=np.uint64)
        self._count = 0
        self._window_start_s = float(start_s)

    @property
    def count(self) -> int:
        return self._count

    def state(self, now_s: float) -> IntegrationState:
        if self._count == 0:
            return IntegrationState.IDLE
        if now_s - self._window_start_s >= self.integration_s:
            return IntegrationState.READY
        return IntegrationState.ACCUMULATING

    def add(self, frame: Frame, now_s: float) -> IntegrationState:
        check_frame_shape(frame, self.width, self.height)
        self._sum += np.asarray(frame.raw, dtype=np.uint64)
        self._count += 1
        return self.state(now_s)

    def flush(self, now_s: float) -> Tuple[Frame, float]:
        """Return ``(mean_frame, window_midpoint_s)`` and open a new window at ``now_s``."""
        mean = (self._sum // np.uint64(self._count)).astype(np.uint16)
        frame = Frame(width=self.width, height=self.height, raw=mean, meta_rows=self.meta_rows)
        t_mid = float(now_s) - 0.5 * self.integration_s

        self._sum.fill(0)
        self._count = 0
        self._window_start_s = float(now_s)
        return frame, t_mid


class DirectIngest:
    """Every frame goes to the accumulator at its arrival time."""

    def feed(self, frame: Frame, now_s: float) -> Optional[Tuple[Frame, float]]:
        return frame, now_s


class IntegratingIngest:
    """Frames are averaged over ``integration_s`` windows before accumulation."""

    def __init__(self, buffer: IntegrationBuffer):
        self.buffer = buffer

    def feed(self, frame: Frame, now_s: float) -> Optional[Tuple[Frame, float]]:
        if self.buffer.add(frame, now_s) is IntegrationState.READY:
            return self.buffer.flush(now_s)
        return None


Ingest = Union[DirectIngest, IntegratingIngest]


class _Counters:
    """Frame counters; written by the ingestion callback only."""

    def __init__(self) -> None:
        self.frames = 0
        self.dropped = 0


# ----------------------------------------------------------------------
# Background activities
# ----------------------------------------------------------------------


class _StimulusToggler:
    """Thread body driving the stimulus as a square wave."""

    def __init__(
        self,
        *,
        stimulus: StimulusController,
        flag: StimulusFlag,
        frequency_hz: float,
        duty_cycle: float,
        duration_s: float,
        elapsed: Callable[[], float],
        halt: threading.Event,
        cancel: threading.Event,
    ):
        self.stimulus = stimulus
        self.flag = flag
        self.period_s = 1.0 / frequency_hz
        self.on_time_s = self.period_s * duty_cycle
        self.off_time_s = self.period_s * (1.0 - duty_cycle)
        self.duration_s = duration_s
        self.elapsed = elapsed
        self.halt = halt
        self.cancel = cancel
        self.error: Optional[BaseException] = None
        self.on_count = 0

    def _stopping(self) -> bool:
        return self.halt.is_set() or self.cancel.is_set() or self.elapsed() >= self.duration_s

    def run(self) -> None:
        is_on = False
        try:
            while not self._stopping():
                if not is_on:
                    if self.stimulus.turn_on(self.cancel):
                        self.flag.set(True)
                        is_on = True
                        self.on_count += 1
                    else:
                        logger.warning("Stimulus turn_on reported failure at t=%.3f s", self.elapsed())
                self.halt.wait(self.on_time_s)

                if self._stopping():
                    break

                if is_on:
                    if self.stimulus.turn_off(self.cancel):
                        self.flag.set(False)
                        is_on = False
                    else:
                        logger.warning("Stimulus turn_off reported failure at t=%.3f s", self.elapsed())
                self.halt.wait(self.off_time_s)
        except Exception as exc:
            self.error = exc
            self.halt.set()
        finally:
            safe_turn_off(self.stimulus, "toggler exit")
            self.flag.set(False)


class _ProgressReporter:
    """Thread body emitting :class:`LockInProgress` snapshots."""

    def __init__(
        self,
        *,
        sink: ProgressSink,
        flag: StimulusFlag,
        counters: _Counters,
        frequency_hz: float,
        duration_s: float,
        interval_s: float,
        elapsed: Callable[[], float],
        halt: threading.Event,
        completed: threading.Event,
    ):
        self.sink = sink
        self.flag = flag
        self.counters = counters
        self.frequency_hz = frequency_hz
        self.duration_s = duration_s
        self.interval_s = interval_s
        self.elapsed = elapsed
        self.halt = halt
        self.completed = completed

    def _report(self, elapsed_s: float) -> None:
        self.sink(
            LockInProgress(
                elapsed_s=elapsed_s,
                total_s=self.duration_s,
                frame_count=self.counters.frames,
                stimulus_on=self.flag.is_on,
                frequency_hz=self.frequency_hz,
            )
        )

    def run(self) -> None:
        try:
            while not self.halt.is_set() and self.elapsed() < self.duration_s:
                self._report(min(self.elapsed(), self.duration_s))
                self.halt.wait(self.interval_s)

            # Final 100 % report only once the run has really completed.
            self.halt.wait()
            if self.completed.is_set():
                self._report(self.duration_s)
        except Exception:
            logger.exception("Progress sink failed; progress reporting stopped")


# ----------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------


class LockInMeasurementRunner:
    """
    Runs lock-in measurements against one frame source.

    The source must already be delivering frames (the runner only subscribes).
    One runner executes one measurement at a time.
    """

    def __init__(self, source: FrameSource, *, clock: Callable[[], float] = time.perf_counter):
        self.source = source
        self._clock = clock

    def run_profile(
        self,
        stimulus: StimulusController,
        profile: LockInProfile,
        *,
        frame_preprocess: Optional[FramePreprocess] = None,
        sample_selector: Optional[SampleSelector] = None,
        progress: Optional[ProgressSink] = None,
        cancel: Optional[threading.Event] = None,
    ) -> LockInResult:
        """Run with the parameters of a :class:`LockInProfile`; profile warnings are logged."""
        for msg in profile.check():
            logger.warning("Lock-in profile: %s", msg)
        return self.run(
            stimulus,
            profile.frequency_hz,
            profile.duration_s,
            profile.meta_rows,
            duty_cycle=profile.duty_cycle,
            settle_s=profile.settle_s,
            frame_preprocess=frame_preprocess,
            sample_selector=sample_selector,
            integration_s=profile.integration_s,
            progress=progress,
            progress_interval_ms=profile.progress_interval_ms,
            cancel=cancel,
            phase_bins=profile.phase_bins,
            track_dc=profile.track_dc,
        )

    def run(
        self,
        stimulus: StimulusController,
        frequency_hz: float,
        duration_s: float,
        meta_rows: int = 0,
        duty_cycle: float = 0.5,
        settle_s: Optional[float] = None,
        frame_preprocess: Optional[FramePreprocess] = None,
        sample_selector: Optional[SampleSelector] = None,
        integration_s: Optional[float] = None,
        progress: Optional[ProgressSink] = None,
        progress_interval_ms: int = 100,
        cancel: Optional[threading.Event] = None,
        phase_bins: int = 36,
        track_dc: bool = True,
    ) -> LockInResult:
        """Run one measurement and return its result.

        Parameters
        ----------
        stimulus:
            Actuator toggled as a square wave.
        frequency_hz, duration_s, duty_cycle:
            Square-wave definition and total run time. ``0 < duty_cycle < 1``.
        meta_rows:
            Trailing metadata rows of the camera frames.
        settle_s:
            Optional delay before frames are ingested and toggling begins.
        frame_preprocess:
            Optional pure transform applied to each frame first (e.g.
            ``DarkFieldCorrector.apply``).
        sample_selector:
            Optional vectorised raw-sample transform passed to the accumulator.
        integration_s:
            If set, average frames over windows of this length and accumulate
            each mean at the window midpoint.
        progress, progress_interval_ms:
            Optional progress sink and its reporting period.
        cancel:
            Cooperative cancellation. A cancelled run still returns its
            (partial) result with ``cancelled=True``.

        Raises
        ------
        InvalidArgumentError
            On out-of-range parameters (nothing is started).
        Exception
            Whatever the stimulus controller raised from the toggling loop,
            after the stimulus has been switched off.
        """
        if not (float(frequency_hz) > 0):
            raise InvalidArgumentError(f"frequency_hz must be > 0, got {frequency_hz}")
        if not (float(duration_s) > 0):
            raise InvalidArgumentError(f"duration_s must be > 0, got {duration_s}")
        if not (0.0 < float(duty_cycle) < 1.0):
            raise InvalidArgumentError(f"duty_cycle must be in (0, 1), got {duty_cycle}")
        if int(progress_interval_ms) <= 0:
            raise InvalidArgumentError(f"progress_interval_ms must be > 0, got {progress_interval_ms}")
        if integration_s is not None and not (float(integration_s) > 0):
            raise InvalidArgumentError(f"integration_s must be > 0 when set, got {integration_s}")
        if settle_s is not None and float(settle_s) < 0:
            raise InvalidArgumentError(f"settle_s must be >= 0 when set, got {settle_s}")

        frequency_hz = float(frequency_hz)
        duration_s = float(duration_s)
        cancel = never_cancelled(cancel)

        acc = LockInAccumulator(
            self.source.width,
            self.source.height,
            frequency_hz,
            meta_rows=meta_rows,
            phase_bins=phase_bins,
            track_dc=track_dc,
        )

        flag = StimulusFlag(False)
        counters = _Counters()
        halt = threading.Event()
        completed = threading.Event()
        ingest_closed = threading.Event()
        # Held for the whole of one frame's ingestion; teardown takes it once
        # after closing so no in-flight frame reaches the returned accumulator.
        ingest_lock = threading.Lock()

        t_start = self._clock()

        def elapsed() -> float:
            return self._clock() - t_start

        # Replaced right before subscribing so the first integration window
        # opens when ingestion starts, not before the settle delay.
        ingest: Ingest = DirectIngest()

        def on_frame(frame: Frame) -> None:
            with ingest_lock:
                if ingest_closed.is_set():
                    return
                try:
                    if frame_preprocess is not None:
                        frame = frame_preprocess(frame)
                    item = ingest.feed(frame, elapsed())
                    if item is None:
                        return
                    f, t = item
                    acc.add_frame(f, t, flag.is_on, sample_selector)
                    counters.frames += 1
                except Exception:
                    counters.dropped += 1
                    logger.debug("Dropped frame during lock-in run", exc_info=True)

        toggler = _StimulusToggler(
            stimulus=stimulus,
            flag=flag,
            frequency_hz=frequency_hz,
            duty_cycle=float(duty_cycle),
            duration_s=duration_s,
            elapsed=elapsed,
            halt=halt,
            cancel=cancel,
        )
        toggle_thread = threading.Thread(target=toggler.run, name="lockin-toggle", daemon=True)

        progress_thread: Optional[threading.Thread] = None
        if progress is not None:
            reporter = _ProgressReporter(
                sink=progress,
                flag=flag,
                counters=counters,
                frequency_hz=frequency_hz,
                duration_s=duration_s,
                interval_s=int(progress_interval_ms) / 1000.0,
                elapsed=elapsed,
                halt=halt,
                completed=completed,
            )
            progress_thread = threading.Thread(target=reporter.run, name="lockin-progress", daemon=True)

        logger.info(
            "Lock-in run: f=%.4g Hz, duration=%.3g s, duty=%.2f, bins=%d, integration=%s",
            frequency_hz,
            duration_s,
            float(duty_cycle),
            acc.phase_bins,
            "off" if integration_s is None else f"{float(integration_s):g} s",
        )

        cancelled = False
        try:
            if progress_thread is not None:
                progress_thread.start()

            if settle_s is not None and settle_s > 0:
                cancelled = cancel.wait(float(settle_s))

            if not cancelled:
                if integration_s is not None:
                    ingest = IntegratingIngest(
                        IntegrationBuffer(
                            self.source.width,
                            self.source.height,
                            acc.meta_rows,
                            float(integration_s),
                            start_s=elapsed(),
                        )
                    )
                with frame_subscription(self.source, on_frame):
                    toggle_thread.start()
                    cancelled = self._wait(duration_s, cancel, halt)

                    if not cancelled and toggler.error is None:
                        completed.set()
                    halt.set()

                    safe_turn_off(stimulus, "run teardown")
                    if toggle_thread.is_alive():
                        toggle_thread.join()
                    ingest_closed.set()

                # Wait for a frame that passed the closed check before unsubscribe.
                with ingest_lock:
                    pass

            halt.set()
            if progress_thread is not None:
                progress_thread.join()
        finally:
            halt.set()
            ingest_closed.set()
            safe_turn_off(stimulus, "run exit")

        if toggler.error is not None:
            logger.error("Lock-in run failed in stimulus toggling: %s", toggler.error)
            raise toggler.error

        if cancelled:
            logger.warning("Lock-in run cancelled after %.3f s", elapsed())
        if counters.dropped:
            logger.warning("Lock-in run dropped %d frame(s)", counters.dropped)
        logger.info(
            "Lock-in run finished: %d frame(s) accumulated, %d stimulus cycle(s)",
            counters.frames,
            toggler.on_count,
        )

        return LockInResult(
            accumulator=acc,
            duration_s=duration_s,
            frequency_hz=frequency_hz,
            elapsed_s=elapsed(),
            frame_count=counters.frames,
            dropped_frames=counters.dropped,
            cancelled=cancelled,
        )

    def _wait(self, duration_s: float, cancel: threading.Event, halt: threading.Event) -> bool:
        """Wait ``duration_s``; True if cancelled, False if elapsed or halted."""
        deadline = self._clock() + duration_s
        while True:
            if cancel.is_set():
                return True
            if halt.is_set():
                return False
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            cancel.wait(min(POLL_INTERVAL_S, remaining))
