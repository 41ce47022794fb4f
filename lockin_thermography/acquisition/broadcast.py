"""In-process frame source that fans frames out to subscribers."""

from __future__ import annotations

import logging
import threading
from typing import List

from lockin_thermography.acquisition.interfaces import FrameCallback
from lockin_thermography.models.frames import Frame

logger = logging.getLogger(__name__)


class FrameBroadcaster:
    """Implements the ``FrameSource`` protocol on top of an explicit ``publish``.

    Camera drivers (or file replays) call :meth:`publish` from their capture
    thread. Frames published while the broadcaster is stopped are discarded.
    A subscriber that raises is logged and skipped; the publisher never sees
    the exception.
    """

    def __init__(self, width: int, height: int):
        self._width = int(width)
        self._height = int(height)
        self._subscribers: List[FrameCallback] = []
        self._lock = threading.Lock()
        self._running = False
        self._published = 0

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def running(self) -> bool:
        return self._running

    @property
    def published_frames(self) -> int:
        return self._published

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, callback: FrameCallback) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: FrameCallback) -> None:
        with self._lock:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

    def start(self) -> None:
        self._running = True

    def stop(self) -> None:
        self._running = False

    def publish(self, frame: Frame) -> None:
        if not self._running:
            return
        with self._lock:
            subscribers = list(self._subscribers)
            self._published += 1
        for callback in subscribers:
            try:
                callback(frame)
            except Exception:
                logger.exception("Frame subscriber %r failed", callback)
