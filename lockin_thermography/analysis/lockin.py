"""Phase-binned lock-in accumulator for periodically stimulated thermal frames.

Two evaluations run side by side on every accepted frame:

1) Synchronous demodulation (I/Q)

   With ``w0 = 2*pi*f`` and ``t`` the time since the first frame:

     I += x * cos(w0*t)
     Q += x * sin(w0*t)

   and per pixel

     amplitude = (2/n) * sqrt(I^2 + Q^2)
     phase     = atan2(Q, I)

   The ``2/n`` normalisation is the sinusoidal-reference estimator. The
   stimulus is usually a square wave, so the amplitude is proportional to, not
   equal to, the square-wave response amplitude (the fundamental of a unit
   square wave is 4/pi). No correction is applied.

2) Phase-binned ON/OFF sums

   The stimulus cycle is split into ``phase_bins`` equal bins. Each frame is
   added to ``sum_on[bin]`` or ``sum_off[bin]`` depending on the stimulus
   state read when it was processed. A differential image at angle ``a``
   compares the ON samples at ``a`` with the OFF samples at ``a + 180``.

Only elapsed time matters: the first ``add_frame`` call latches the time
origin. Phase is derived from time alone; the stimulus flag never influences
which bin a sample lands in.
"""

from __future__ import annotations

import math
from typing import Callable, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from lockin_thermography.analysis.accumulate import check_frame_shape
from lockin_thermography.analysis.render import rescale_to_u16
from lockin_thermography.errors import (
    InsufficientSamplesError,
    InvalidArgumentError,
    NoSamplesError,
    ShapeMismatchError,
)
from lockin_thermography.models.frames import Frame

SampleSelector = Callable[[np.ndarray], np.ndarray]

TWO_PI = 2.0 * math.pi


def _identity(raw: np.ndarray) -> np.ndarray:
    return raw.astype(np.float64)


class LockInAccumulator:
    """
    Per-pixel I/Q and phase-binned ON/OFF accumulator.

    Layout
    - ``I``, ``Q``, ``dc_sum``: float64, shape ``(pixel_count,)``.
    - ``sum_on``, ``sum_off``: float64, contiguous ``(phase_bins, pixel_count)``.
    - ``count_on``, ``count_off``: int64, shape ``(phase_bins,)``.

    Only the visible area (``height - meta_rows`` rows) is processed.

    Not thread-safe for concurrent writers. During a measurement a single
    ingestion thread writes; queries are meant for after the run.
    """

    def __init__(
        self,
        width: int,
        height: int,
        frequency_hz: float,
        meta_rows: int = 0,
        phase_bins: int = 36,
        track_dc: bool = True,
    ):
        if int(width) <= 0:
            raise InvalidArgumentError(f"width must be > 0, got {width}")
        if int(height) <= 0:
            raise InvalidArgumentError(f"height must be > 0, got {height}")
        if not (float(frequency_hz) > 0):
            raise InvalidArgumentError(f"frequency_hz must be > 0, got {frequency_hz}")
        if int(phase_bins) <= 0:
            raise InvalidArgumentError(f"phase_bins must be > 0, got {phase_bins}")

        self._w = int(width)
        self._h = int(height)
        self._meta_rows = max(0, int(meta_rows))
        self._f_hz = float(frequency_hz)
        self._w0 = TWO_PI * self._f_hz
        self._bins = int(phase_bins)

        n_pix = self.pixel_count
        self._I = np.zeros(n_pix, dtype=np.float64)
        self._Q = np.zeros(n_pix, dtype=np.float64)
        self._dc_sum: Optional[np.ndarray] = np.zeros(n_pix, dtype=np.float64) if track_dc else None

        self._sum_on = np.zeros((self._bins, n_pix), dtype=np.float64)
        self._sum_off = np.zeros((self._bins, n_pix), dtype=np.float64)
        self._count_on = np.zeros(self._bins, dtype=np.int64)
        self._count_off = np.zeros(self._bins, dtype=np.int64)

        self._n = 0
        self._t0: Optional[float] = None

    # ------------------------------------------------------------------
    # Geometry / state
    # ------------------------------------------------------------------

    @property
    def width(self) -> int:
        return self._w

    @property
    def height(self) -> int:
        return self._h

    @property
    def meta_rows(self) -> int:
        return self._meta_rows

    @property
    def visible_height(self) -> int:
        return max(0, self._h - self._meta_rows)

    @property
    def pixel_count(self) -> int:
        return self._w * self.visible_height

    @property
    def sample_count(self) -> int:
        return self._n

    @property
    def frequency_hz(self) -> float:
        return self._f_hz

    @property
    def phase_bins(self) -> int:
        return self._bins

    @property
    def tracks_dc(self) -> bool:
        return self._dc_sum is not None

    @property
    def t0(self) -> Optional[float]:
        """Latched time origin, None while the accumulator is fresh."""
        return self._t0

    @property
    def count_on(self) -> np.ndarray:
        return self._count_on.copy()

    @property
    def count_off(self) -> np.ndarray:
        return self._count_off.copy()

    def reset(self, t0_s: Optional[float] = None) -> None:
        """Clear all sums and counters.

        With ``t0_s`` the accumulator starts latched at that time origin;
        without it the next ``add_frame`` latches the origin again.
        """
        self._I.fill(0.0)
        self._Q.fill(0.0)
        if self._dc_sum is not None:
            self._dc_sum.fill(0.0)
        self._sum_on.fill(0.0)
        self._sum_off.fill(0.0)
        self._count_on.fill(0)
        self._count_off.fill(0)
        self._n = 0
        self._t0 = None if t0_s is None else float(t0_s)

    # ------------------------------------------------------------------
    # Phase mapping
    # ------------------------------------------------------------------

    def _phase_to_bin(self, phase_rad: float) -> int:
        b = int(math.floor(phase_rad / TWO_PI * self._bins))
        return min(max(b, 0), self._bins - 1)

    def _angle_to_bin(self, angle_deg: float) -> int:
        b = int(math.floor(angle_deg / 360.0 * self._bins))
        return min(max(b, 0), self._bins - 1)

    def phase_at(self, time_s: float) -> float:
        """Stimulus phase in ``[0, 2*pi)`` at ``time_s`` (requires a latched origin)."""
        if self._t0 is None:
            raise NoSamplesError("Time origin not latched yet.")
        phi = math.fmod(self._w0 * (float(time_s) - self._t0), TWO_PI)
        if phi < 0:
            phi += TWO_PI
        return phi

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def add_frame(
        self,
        frame: Frame,
        time_s: float,
        stimulus_on: bool,
        sample_selector: Optional[SampleSelector] = None,
    ) -> int:
        """Accumulate one frame and return the phase bin it was assigned to.

        Parameters
        ----------
        frame:
            Frame with the accumulator's width/height.
        time_s:
            Acquisition time in seconds on any monotonic clock.
        stimulus_on:
            Selects the ON or OFF sum of the phase bin.
        sample_selector:
            Vectorised transform applied to the visible uint16 samples (e.g. raw
            counts to Celsius). Must return one value per visible pixel.
            Defaults to the identity.

        Nothing is modified if the frame shape or the selector output is wrong.
        """
        check_frame_shape(frame, self._w, self._h)

        n_pix = self.pixel_count
        raw = np.asarray(frame.raw)[:n_pix]
        x = (sample_selector or _identity)(raw)
        x = np.asarray(x, dtype=np.float64).reshape(-1)
        if x.size != n_pix:
            raise ShapeMismatchError(f"sample_selector returned {x.size} values, expected {n_pix}")

        if self._t0 is None:
            self._t0 = float(time_s)

        t = float(time_s) - self._t0
        phi = math.fmod(self._w0 * t, TWO_PI)
        if phi < 0:
            phi += TWO_PI
        b = self._phase_to_bin(phi)

        c = math.cos(self._w0 * t)
        s = math.sin(self._w0 * t)

        self._I += c * x
        self._Q += s * x
        if self._dc_sum is not None:
            self._dc_sum += x

        if stimulus_on:
            self._sum_on[b] += x
            self._count_on[b] += 1
        else:
            self._sum_off[b] += x
            self._count_off[b] += 1
        self._n += 1
        return b

    # ------------------------------------------------------------------
    # Differential images
    # ------------------------------------------------------------------

    def _require_samples(self) -> None:
        if self._n <= 0:
            raise NoSamplesError("No samples in LockInAccumulator.")

    def differential_at_angle(self, angle_deg: float, use_mean: bool = True) -> np.ndarray:
        """ON-minus-OFF float map at ``angle_deg`` (OFF taken 180 degrees later).

        Returns the visible-area map as a 1D array of length ``pixel_count``.
        """
        self._require_samples()

        a_on = math.fmod(float(angle_deg), 360.0)
        if a_on < 0:
            a_on += 360.0
        a_off = math.fmod(a_on + 180.0, 360.0)

        b_on = self._angle_to_bin(a_on)
        b_off = self._angle_to_bin(a_off)

        n_on = int(self._count_on[b_on])
        n_off = int(self._count_off[b_off])
        if n_on == 0 or n_off == 0:
            raise InsufficientSamplesError(
                f"Too few samples: ON@{a_on:.1f} deg bin {b_on} (ON={n_on}), "
                f"OFF@{a_off:.1f} deg bin {b_off} (OFF={n_off})."
            )

        on = self._sum_on[b_on]
        off = self._sum_off[b_off]
        if use_mean:
            return on / n_on - off / n_off
        return on - off

    def get_frame_at_angle(
        self,
        angle_deg: float,
        use_mean: bool = True,
        signal_min: Optional[float] = None,
        signal_max: Optional[float] = None,
    ) -> Frame:
        """Differential image at ``angle_deg`` rendered to 16 bit.

        ``signal_min``/``signal_max`` fix the display window; each defaults to
        the min/max of the differential map. A flat window gives a mid-gray
        (32768) image.
        """
        diff = self.differential_at_angle(angle_deg, use_mean=use_mean)
        raw = rescale_to_u16(diff, lo=signal_min, hi=signal_max)
        return self._visible_frame(raw)

    def get_all_angle_frames(
        self,
        use_mean: bool = True,
        export_max_angle_deg: float = 180.0,
        signal_min: Optional[float] = None,
        signal_max: Optional[float] = None,
        skip_insufficient: bool = False,
    ) -> Dict[float, Frame]:
        """Differential image for every bin centre below ``export_max_angle_deg``.

        Keys are bin-centre angles ``(b + 0.5) * 360 / phase_bins`` in degrees.
        Half a cycle is usually enough: the second half only repeats the first
        with ON/OFF swapped.

        With ``skip_insufficient`` angles whose bins lack samples are left out
        instead of raising.
        """
        out: Dict[float, Frame] = {}
        for b in range(self._bins):
            angle = (b + 0.5) * 360.0 / self._bins
            if angle >= export_max_angle_deg + 1e-9:
                continue
            try:
                out[angle] = self.get_frame_at_angle(
                    angle, use_mean=use_mean, signal_min=signal_min, signal_max=signal_max
                )
            except InsufficientSamplesError:
                if not skip_insufficient:
                    raise
        return out

    # ------------------------------------------------------------------
    # I/Q evaluation
    # ------------------------------------------------------------------

    def get_iq(self) -> Tuple[np.ndarray, np.ndarray]:
        """Copies of the raw I and Q sums (no normalisation)."""
        return self._I.copy(), self._Q.copy()

    def get_amplitude(self, normalize: bool = True, remove_dc: bool = False) -> np.ndarray:
        """Per-pixel lock-in amplitude ``norm * sqrt(I^2 + Q^2)``.

        Parameters
        ----------
        normalize:
            Use ``norm = 2/n``; otherwise ``norm = 1``.
        remove_dc:
            Reserved for a DC leakage correction. DC is orthogonal to sin/cos
            over whole periods, but leaks in when the run does not span an
            integer number of periods. Currently accepted and ignored.
        """
        self._require_samples()
        # TODO: honour remove_dc by windowing the I/Q sums (e.g. Hann) and subtracting the dc_sum leakage term.
        norm = 2.0 / self._n if normalize else 1.0
        return norm * np.hypot(self._I, self._Q)

    def get_phase(self) -> np.ndarray:
        """Per-pixel phase ``atan2(Q, I)`` in radians, range ``(-pi, pi]``."""
        self._require_samples()
        return np.arctan2(self._Q, self._I)

    def get_dc(self) -> Optional[np.ndarray]:
        """Per-pixel mean of the selected samples, or None without DC tracking."""
        self._require_samples()
        if self._dc_sum is None:
            return None
        return self._dc_sum / self._n

    def get_amplitude_frame(
        self,
        normalize: bool = True,
        amp_min: Optional[float] = None,
        amp_max: Optional[float] = None,
    ) -> Frame:
        """Amplitude map rendered to 16 bit; a flat window gives an all-zero image."""
        amp = self.get_amplitude(normalize=normalize)
        raw = rescale_to_u16(amp, lo=amp_min, hi=amp_max, flat_value=0)
        return self._visible_frame(raw)

    def get_phase_frame(
        self,
        normalize: bool = True,
        mask_low_amplitude: bool = False,
        amplitude_threshold: float = 0.0,
    ) -> Frame:
        """Phase map rendered to 16 bit: ``(-pi, pi]`` maps linearly onto ``[0, 65535]``.

        With ``mask_low_amplitude`` pixels whose amplitude is below
        ``amplitude_threshold`` are set to 0, since their phase is noise.
        """
        phase = self.get_phase()
        raw = np.floor((phase + math.pi) * (65535.0 / TWO_PI))
        raw = np.clip(raw, 0, 65535).astype(np.uint16)
        if mask_low_amplitude:
            amp = self.get_amplitude(normalize=normalize)
            raw[amp < float(amplitude_threshold)] = 0
        return self._visible_frame(raw)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def bin_table(self) -> pd.DataFrame:
        """One row per phase bin with its angular extent and ON/OFF sample counts."""
        b = np.arange(self._bins, dtype=int)
        width_deg = 360.0 / self._bins
        return pd.DataFrame(
            {
                "bin": b,
                "angle_start_deg": b * width_deg,
                "angle_center_deg": (b + 0.5) * width_deg,
                "count_on": self._count_on.copy(),
                "count_off": self._count_off.copy(),
            }
        )

    def _visible_frame(self, raw: np.ndarray) -> Frame:
        return Frame(width=self._w, height=self.visible_height, raw=raw, meta_rows=0)
