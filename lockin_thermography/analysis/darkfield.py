"""Dark-field (fixed-pattern) offset correction.

A reference frame is captured with the scene blocked (closed shutter or a
uniform target). Every later frame is corrected per visible pixel as

    out = clamp(raw - reference + mean(reference), 0, 65535)

rounded half up. Subtracting the reference removes the per-pixel offset
pattern; adding its mean back keeps the overall brightness level, so the
corrected frame stays in raw sensor units. Metadata rows are copied through.

The corrector holds no per-frame state: ``apply`` can be called from any
thread once the reference is set.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from lockin_thermography.analysis.accumulate import check_frame_shape
from lockin_thermography.errors import ShapeMismatchError
from lockin_thermography.models.frames import Frame


class DarkFieldCorrector:
    def __init__(self) -> None:
        self._reference: Optional[np.ndarray] = None
        self._reference_mean = 0.0
        self._width = 0
        self._height = 0
        self._meta_rows = 0

    @property
    def is_calibrated(self) -> bool:
        return self._reference is not None

    @property
    def reference_mean(self) -> float:
        return self._reference_mean

    def set_reference(self, frame: Frame, meta_rows: int) -> None:
        """Store the visible area of ``frame`` as the dark reference."""
        width = int(frame.width)
        height = int(frame.height)
        raw = np.asarray(frame.raw)
        if raw.size != width * height:
            raise ShapeMismatchError(
                f"dark frame has {raw.size} samples, expected width*height={width * height}"
            )

        meta = max(0, int(meta_rows))
        n_visible = width * max(0, height - meta)
        reference = raw[:n_visible].astype(np.float64)

        self._width = width
        self._height = height
        self._meta_rows = meta
        self._reference = reference
        self._reference_mean = float(reference.mean()) if n_visible > 0 else 0.0

    def clear(self) -> None:
        """Drop the reference; ``apply`` becomes a pass-through again."""
        self._reference = None
        self._reference_mean = 0.0

    def apply(self, frame: Frame) -> Frame:
        if self._reference is None:
            return frame
        check_frame_shape(frame, self._width, self._height)

        n_visible = self._reference.size
        raw = np.asarray(frame.raw)
        v = raw[:n_visible].astype(np.float64) - self._reference + self._reference_mean
        v = np.floor(np.clip(v, 0.0, 65535.0) + 0.5)

        corrected = raw.copy()
        corrected[:n_visible] = v.astype(np.uint16)

        return Frame(
            width=self._width,
            height=self._height,
            raw=corrected,
            meta_rows=frame.meta_rows,
            timestamp=frame.timestamp,
        )
