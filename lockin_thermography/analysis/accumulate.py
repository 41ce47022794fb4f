from __future__ import annotations

import numpy as np

from lockin_thermography.errors import EmptyAccumulationError, ShapeMismatchError
from lockin_thermography.models.frames import Frame


def check_frame_shape(frame: Frame, width: int, height: int) -> None:
    """Raise :class:`ShapeMismatchError` unless ``frame`` is ``width x height`` with a full sample array."""
    if int(frame.width) != width or int(frame.height) != height:
        raise ShapeMismatchError(
            f"frame is {frame.width}x{frame.height}, expected {width}x{height}"
        )
    n = np.asarray(frame.raw).size
    if n != width * height:
        raise ShapeMismatchError(f"frame.raw has {n} samples, expected {width * height}")


class FrameAccumulator:
    """
    Running per-pixel sum of frames over the visible area.

    The sum is kept in uint64 so that hours of 16-bit frames cannot overflow.
    There is no reset: create a new accumulator per acquisition.
    """

    def __init__(self, width: int, height: int, meta_rows: int = 0):
        self.width = int(width)
        self.height = int(height)
        self.meta_rows = max(0, int(meta_rows))
        self.visible_height = max(0, self.height - self.meta_rows)
        self.pixel_count = self.width * self.visible_height

        self._sum = np.zeros(self.pixel_count, dtype=np.uint64)
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def add(self, frame: Frame) -> None:
        check_frame_shape(frame, self.width, self.height)
        self._sum += np.asarray(frame.raw[: self.pixel_count], dtype=np.uint64)
        self._count += 1

    def build(self, normalize: bool = False) -> Frame:
        """Return the accumulated frame.

        normalize:
          - False: per-pixel integer mean ``sum // count`` (for further processing).
          - True: sum stretched so that min -> 0 and max -> 65535 (for display).
            A flat sum uses a range of one and therefore maps to 0.

        The returned frame covers the visible area only (``meta_rows=0``).
        """
        if self._count <= 0:
            raise EmptyAccumulationError("No frames accumulated.")

        if not normalize:
            raw = self._sum // np.uint64(self._count)
        else:
            lo = self._sum.min()
            hi = self._sum.max()
            span = (hi - lo) if hi > lo else np.uint64(1)
            # Stay in integers: (sum - lo) * 65535 fits uint64 for any realistic count.
            raw = (self._sum - lo) * np.uint64(65535) // span

        return Frame(
            width=self.width,
            height=self.visible_height,
            raw=raw.astype(np.uint16),
            meta_rows=0,
        )
