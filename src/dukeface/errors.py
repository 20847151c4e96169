"""Exception hierarchy for DukeFace."""

from __future__ import annotations


class DukeFaceError(Exception):
    """Base class for all DukeFace errors."""


class InvalidInput(DukeFaceError):  # noqa: N818
    """The pixel buffer is missing, malformed, empty, or too large."""


class DecodeError(DukeFaceError):  # noqa: N818
    """Raw bytes could not be decoded into an image."""


class EncodeError(DukeFaceError):  # noqa: N818
    """An image could not be encoded back into bytes."""


class DetectorUnavailable(DukeFaceError):  # noqa: N818
    """The face classifier was not loaded."""


class QueueFullError(DukeFaceError):
    """A message destination has no room for another message."""


class UnknownDestinationError(DukeFaceError):
    """A message was sent to a destination with no registered listener."""


PIPELINE_ERRORS: tuple[type[DukeFaceError], ...] = (
    InvalidInput,
    DecodeError,
    DetectorUnavailable,
    EncodeError,
)
