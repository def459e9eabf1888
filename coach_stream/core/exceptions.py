"""Errors surfaced by the streaming session engine.

Cancellation is not an error: a cancelled stream ends with
``asyncio.CancelledError`` and never reaches an ``on_error`` callback.
"""

from typing import Optional


class StreamError(Exception):
    """Base class for errors delivered through the ``on_error`` callback."""

    pass


class TransportError(StreamError):
    """Raised when the stream request fails or the byte stream breaks."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PayloadDecodeError(StreamError):
    """Raised when an event record's payload is not valid JSON."""

    def __init__(self, event: str, detail: str):
        self.event = event
        super().__init__(f"Failed to parse {event} payload: {detail}")


class AgentStreamError(StreamError):
    """An ``error`` event sent by the remote agent. The message is the raw payload."""

    pass
