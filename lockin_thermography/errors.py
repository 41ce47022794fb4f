"""Exception hierarchy shared by all lock-in thermography components.

Every error derives from :class:`LockInError` and from the closest builtin, so
callers can catch either ``LockInError`` or e.g. ``ValueError``.

- Configuration problems (:class:`InvalidArgumentError`) and shape problems
  (:class:`ShapeMismatchError`) are raised before any state is touched.
- Query problems (:class:`EmptyAccumulationError`, :class:`NoSamplesError`,
  :class:`InsufficientSamplesError`) leave the accumulator intact; the query can
  be retried once more data has been collected.
"""

from __future__ import annotations


class LockInError(Exception):
    """Base class for all errors raised by this package."""


class InvalidArgumentError(LockInError, ValueError):
    """A construction or run parameter is out of range."""


class ShapeMismatchError(LockInError, ValueError):
    """A frame does not match the configured width/height/sample count."""


class EmptyAccumulationError(LockInError, RuntimeError):
    """A frame sum was requested before any frame was added."""


class NoSamplesError(LockInError, RuntimeError):
    """A lock-in query was issued before any sample was accumulated."""


class InsufficientSamplesError(LockInError, RuntimeError):
    """The phase bin(s) needed for a differential image hold no ON or no OFF samples."""


class AcquisitionTimeoutError(LockInError, TimeoutError):
    """No frame arrived during a timed acquisition."""
