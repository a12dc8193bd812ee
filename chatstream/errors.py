"""
ERRORS MODULE
=============

Typed failures raised by the services and consumed by the turn processor.
Each exception carries an ErrorKind; the processor maps the kind to what the
client sees ([ERROR], an error frame, or nothing when the socket is gone).
"""

from enum import Enum


class ErrorKind(str, Enum):
    MALFORMED_INPUT = "malformed_input"
    IMAGE_UPLOAD = "image_upload"
    PROVIDER_STREAM = "provider_stream"
    PERSISTENCE_FAILURE = "persistence_failure"
    TRANSPORT_FAILURE = "transport_failure"
    INTERNAL = "internal"


class TurnError(Exception):
    """Base class for everything that can end a turn early."""

    kind = ErrorKind.INTERNAL


class MalformedInput(TurnError):
    """Payload too large, not JSON, or missing both prompt and image."""

    kind = ErrorKind.MALFORMED_INPUT


class UploadError(TurnError):
    """The image store could not store the image."""

    kind = ErrorKind.IMAGE_UPLOAD


class ProviderStreamError(TurnError):
    """The completion stream failed to open, broke mid-way, or went idle."""

    kind = ErrorKind.PROVIDER_STREAM


class PersistenceFailure(TurnError):
    """The chat store could not read or write."""

    kind = ErrorKind.PERSISTENCE_FAILURE


class TransportFailure(TurnError):
    """A frame could not be sent (client disconnected)."""

    kind = ErrorKind.TRANSPORT_FAILURE
