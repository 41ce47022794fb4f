from __future__ import annotations

import numpy as np

from lockin_thermography.errors import InvalidArgumentError


class LinearTemperatureConverter:
    """Linear raw-to-Celsius mapping between two calibration points.

    Raw values outside ``[raw_min, raw_max]`` are clamped first, so the output
    never leaves ``[t_min_c, t_max_c]``. This is a pragmatic fallback for
    cameras without a radiometric lookup table, not a calibrated conversion.

    Instances are callable and can be passed as the ``sample_selector`` of the
    lock-in accumulator to demodulate in degrees Celsius instead of raw counts.
    """

    def __init__(self, raw_min: int, raw_max: int, t_min_c: float, t_max_c: float):
        if int(raw_max) <= int(raw_min):
            raise InvalidArgumentError(f"raw_max ({raw_max}) must be > raw_min ({raw_min})")
        self.raw_min = int(raw_min)
        self.raw_max = int(raw_max)
        self.t_min_c = float(t_min_c)
        self.t_max_c = float(t_max_c)

    def raw_to_celsius(self, raw: np.ndarray) -> np.ndarray:
        r = np.clip(np.asarray(raw, dtype=np.float64), self.raw_min, self.raw_max)
        f = (r - self.raw_min) / float(self.raw_max - self.raw_min)
        return self.t_min_c + f * (self.t_max_c - self.t_min_c)

    def __call__(self, raw: np.ndarray) -> np.ndarray:
        return self.raw_to_celsius(raw)
