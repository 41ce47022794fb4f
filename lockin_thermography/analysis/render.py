"""Linear windowing of float maps into 16-bit images.

All rendered lock-in outputs (differential, amplitude) share the same mapping:

    f = (v - lo) / (hi - lo)
    u16 = 0 if f <= 0, 65535 if f >= 1, else floor(f * 65535)

``lo``/``hi`` default to the map's own min/max. When ``hi - lo`` is at or
below ``FLAT_RANGE_EPS`` the map carries no contrast and a constant image is
returned instead.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

U16_MAX = 65535
MID_GRAY_U16 = 32768
FLAT_RANGE_EPS = 1e-12


def rescale_to_u16(
    values: np.ndarray,
    *,
    lo: Optional[float] = None,
    hi: Optional[float] = None,
    flat_value: int = MID_GRAY_U16,
) -> np.ndarray:
    """Map a float array linearly onto ``[0, 65535]``.

    Parameters
    ----------
    values:
        Input map (any shape).
    lo, hi:
        Signal window. Each defaults to the min/max of ``values``.
    flat_value:
        Constant used when the window is flat.

    Returns
    -------
    np.ndarray
        uint16 array with the shape of ``values``.
    """
    v = np.asarray(values, dtype=np.float64)
    if v.size == 0:
        return np.zeros(v.shape, dtype=np.uint16)

    lo_ = float(np.min(v)) if lo is None else float(lo)
    hi_ = float(np.max(v)) if hi is None else float(hi)
    span = hi_ - lo_

    if not (span > FLAT_RANGE_EPS):
        return np.full(v.shape, int(flat_value), dtype=np.uint16)

    f = (v - lo_) / span
    out = np.floor(np.clip(f, 0.0, 1.0) * float(U16_MAX))
    return out.astype(np.uint16)
