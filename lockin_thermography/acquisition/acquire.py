from __future__ import annotations

import logging
import threading
from typing import Optional

from lockin_thermography.acquisition.interfaces import FrameSource, frame_subscription, never_cancelled
from lockin_thermography.analysis.accumulate import FrameAccumulator
from lockin_thermography.errors import AcquisitionTimeoutError, InvalidArgumentError
from lockin_thermography.models.frames import Frame

logger = logging.getLogger(__name__)


def acquire_averaged_frame(
    source: FrameSource,
    duration_s: float,
    meta_rows: int = 0,
    *,
    normalize: bool = False,
    cancel: Optional[threading.Event] = None,
) -> Frame:
    """Start ``source``, sum its frames for ``duration_s`` and return the built frame.

    Typical use is capturing the dark reference for
    :class:`~lockin_thermography.analysis.darkfield.DarkFieldCorrector` with the
    shutter closed. The source is stopped again on exit. Note that the result
    covers the visible area only.

    Raises
    ------
    AcquisitionTimeoutError
        If no frame arrived within the window (or before cancellation).
    """
    if not (float(duration_s) > 0):
        raise InvalidArgumentError(f"duration_s must be > 0, got {duration_s}")

    acc = FrameAccumulator(source.width, source.height, meta_rows)
    dropped = 0

    def on_frame(frame: Frame) -> None:
        nonlocal dropped
        try:
            acc.add(frame)
        except Exception:
            dropped += 1
            logger.debug("Dropped frame during acquisition", exc_info=True)

    cancel = never_cancelled(cancel)
    with frame_subscription(source, on_frame):
        source.start()
        try:
            cancel.wait(float(duration_s))
        finally:
            source.stop()

    if dropped:
        logger.warning("Acquisition dropped %d frame(s)", dropped)
    if acc.count == 0:
        raise AcquisitionTimeoutError(f"No frames received during {float(duration_s):g} s acquisition.")

    logger.info("Acquired %d frame(s) over %.3g s", acc.count, float(duration_s))
    return acc.build(normalize=normalize)
