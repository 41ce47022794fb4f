"""Frame processing package.

Design principle:
  - Acquisition produces :class:`~lockin_thermography.models.frames.Frame` objects.
  - Analysis consumes frames and produces per-pixel numeric maps.

Nothing in this package touches hardware or threads; every class here can be
fed from recorded data just as well as from a live measurement.
"""

from .accumulate import FrameAccumulator
from .darkfield import DarkFieldCorrector
from .lockin import LockInAccumulator, SampleSelector
from .render import rescale_to_u16
from .temperature import LinearTemperatureConverter

__all__ = [
    "FrameAccumulator",
    "DarkFieldCorrector",
    "LockInAccumulator",
    "SampleSelector",
    "rescale_to_u16",
    "LinearTemperatureConverter",
]
