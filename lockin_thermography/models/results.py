from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:
    from lockin_thermography.analysis.lockin import LockInAccumulator


@dataclass(frozen=True)
class LockInProgress:
    """Progress snapshot emitted periodically during a measurement.

    Attributes
    ----------
    elapsed_s, total_s:
        Elapsed and configured measurement time.
    frame_count:
        Frames (or integrated frames) accepted by the accumulator so far.
    stimulus_on:
        Stimulus state as last written by the toggler.
    frequency_hz:
        Stimulus frequency.
    """

    elapsed_s: float
    total_s: float
    frame_count: int
    stimulus_on: bool
    frequency_hz: float

    @property
    def percent(self) -> float:
        if self.total_s <= 0:
            return 0.0
        return self.elapsed_s / self.total_s * 100.0


@dataclass(frozen=True)
class LockInResult:
    """Outcome of one measurement run.

    The result takes over the accumulator from the runner; nothing writes to it
    afterwards.

    Attributes
    ----------
    accumulator:
        The populated :class:`~lockin_thermography.analysis.lockin.LockInAccumulator`.
    duration_s, frequency_hz:
        Configured run parameters.
    elapsed_s:
        Wall time from run start to teardown.
    frame_count, dropped_frames:
        Frames accepted by / dropped before the accumulator.
    cancelled:
        True if the run ended through the cancel event before ``duration_s``.
    """

    accumulator: "LockInAccumulator"
    duration_s: float
    frequency_hz: float

    elapsed_s: float = 0.0
    frame_count: int = 0
    dropped_frames: int = 0
    cancelled: bool = False

    def summary(self) -> Dict[str, Any]:
        """JSON-friendly description of the run (no pixel data)."""
        acc = self.accumulator
        return {
            "duration_s": float(self.duration_s),
            "frequency_hz": float(self.frequency_hz),
            "elapsed_s": float(self.elapsed_s),
            "frame_count": int(self.frame_count),
            "dropped_frames": int(self.dropped_frames),
            "cancelled": bool(self.cancelled),
            "sample_count": int(acc.sample_count),
            "width": int(acc.width),
            "visible_height": int(acc.visible_height),
            "phase_bins": int(acc.phase_bins),
        }
