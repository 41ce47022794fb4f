from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import numpy as np

from lockin_thermography.errors import ShapeMismatchError


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Frame:
    """
    One thermal camera frame.

    Notes
    - ``raw`` is a 1D uint16 array in row-major order, ``raw.size == width*height``.
      The array is copied on construction and flagged read-only.
    - The last ``meta_rows`` rows carry camera metadata and are not part of the
      visible image. All processing works on ``raw[:pixel_count]``.
    - ``gray8`` is an optional precomputed 8-bit preview with the same layout.
    """
    width: int
    height: int
    raw: np.ndarray
    gray8: Optional[np.ndarray] = None
    meta_rows: int = 0
    timestamp: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        raw = np.array(self.raw, dtype=np.uint16, copy=True).reshape(-1)
        if raw.size != int(self.width) * int(self.height):
            raise ShapeMismatchError(
                f"raw has {raw.size} samples, expected width*height={int(self.width) * int(self.height)}"
            )
        raw.flags.writeable = False
        object.__setattr__(self, "raw", raw)
        object.__setattr__(self, "meta_rows", max(0, int(self.meta_rows)))

        if self.gray8 is not None:
            gray = np.array(self.gray8, dtype=np.uint8, copy=True).reshape(-1)
            gray.flags.writeable = False
            object.__setattr__(self, "gray8", gray)

    @property
    def visible_height(self) -> int:
        return max(0, int(self.height) - self.meta_rows)

    @property
    def pixel_count(self) -> int:
        return int(self.width) * self.visible_height

    @property
    def visible(self) -> np.ndarray:
        """Visible samples (metadata rows stripped), 1D read-only view."""
        return self.raw[: self.pixel_count]

    def image(self) -> np.ndarray:
        """Visible samples as a ``(visible_height, width)`` view."""
        return self.visible.reshape((self.visible_height, int(self.width)))
