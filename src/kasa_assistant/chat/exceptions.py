"""Errors that end a chat exchange.

Only transport-level problems are fatal. A data payload that fails to
parse is handled inside the stream decoder and never surfaces here.
"""

from __future__ import annotations


class StreamError(Exception):
    """Base error for a failed chat exchange."""


class ConnectionFailed(StreamError):
    """The streamed response could not be established."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransportInterrupted(StreamError):
    """The byte source raised an error after the stream had opened."""


class PayloadBudgetExceeded(StreamError):
    """Unresolved stream text grew past the configured budget."""

    def __init__(self, message: str, buffered_chars: int, limit: int):
        super().__init__(message)
        self.buffered_chars = buffered_chars
        self.limit = limit
