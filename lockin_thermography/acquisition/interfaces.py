from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Protocol

from lockin_thermography.models.frames import Frame

FrameCallback = Callable[[Frame], None]


class FrameSource(Protocol):
    """Push-style frame stream (camera driver, file replay, simulator)."""

    @property
    def width(self) -> int:
        """Frame width in pixels."""

    @property
    def height(self) -> int:
        """Frame height in rows, metadata rows included."""

    def subscribe(self, callback: FrameCallback) -> None:
        """Register ``callback``; it is invoked once per frame, possibly on another thread."""

    def unsubscribe(self, callback: FrameCallback) -> None:
        """Remove a previously registered callback. Unknown callbacks are ignored."""

    def start(self) -> None:
        """Start delivering frames."""

    def stop(self) -> None:
        """Stop delivering frames."""


class StimulusController(Protocol):
    """On/off actuator driving the thermal excitation (relay, smart plug, GPIO)."""

    def turn_on(self, cancel: threading.Event) -> bool:
        """Switch the stimulus on. Returns False if the device reported a failure."""

    def turn_off(self, cancel: threading.Event) -> bool:
        """Switch the stimulus off. Returns False if the device reported a failure."""


class StimulusFlag:
    """Last stimulus state written by the toggler, read by frame ingestion.

    One writer, one reader, no lock. A frame processed right at a switching
    edge may be filed under the previous state; this only affects which
    ON/OFF bucket receives that sample, never its phase bin.
    """

    __slots__ = ("_on",)

    def __init__(self, on: bool = False) -> None:
        self._on = bool(on)

    @property
    def is_on(self) -> bool:
        return self._on

    def set(self, on: bool) -> None:
        self._on = bool(on)


@contextmanager
def frame_subscription(source: FrameSource, callback: FrameCallback) -> Iterator[FrameCallback]:
    """Subscribe ``callback`` for the duration of the ``with`` block.

    The callback is unsubscribed on exit, including when the block raises.
    """
    source.subscribe(callback)
    try:
        yield callback
    finally:
        source.unsubscribe(callback)


def never_cancelled(cancel: Optional[threading.Event] = None) -> threading.Event:
    """Return ``cancel`` or, if None, a fresh event that is never set."""
    return cancel if cancel is not None else threading.Event()
