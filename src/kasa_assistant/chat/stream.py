"""Incremental decoder for chat completion event streams."""

from __future__ import annotations

import codecs
import json
import re
from enum import Enum

import structlog

from kasa_assistant.chat.exceptions import PayloadBudgetExceeded

logger = structlog.get_logger()

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

# Lines that start a new event-stream field can never continue a split payload.
_FIELD_LINE = re.compile(r"^(data|event|id|retry):")


class StreamPhase(str, Enum):
    """Lifecycle of one streamed reply."""

    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL_PHASES = frozenset(
    {StreamPhase.COMPLETED, StreamPhase.FAILED, StreamPhase.CANCELLED}
)


class SSEStreamDecoder:
    """Turns raw event-stream bytes into a growing assistant reply.

    Bytes go through a stateful UTF-8 decoder so a character split across
    two chunks is reassembled. Decoded text is buffered until a full line is
    available; each ``data: {...}`` line contributes the text found at
    ``choices[0].delta.content``.

    A payload that does not parse is held as a pending fragment instead of
    being dropped. The next line is joined onto it if it does not look like
    a new field, and the join is retried up to ``max_payload_retries`` times.

    Args:
        max_payload_retries: Retries for a pending fragment before discarding it.
        max_buffer_chars: Budget for unresolved text; exceeding it fails the stream.
    """

    def __init__(
        self,
        max_payload_retries: int = 3,
        max_buffer_chars: int = 1_048_576,
    ) -> None:
        self._byte_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._line_buffer = ""
        self._content = ""
        self._pending: str | None = None
        self._pending_attempts = 0
        self._max_payload_retries = max_payload_retries
        self._max_buffer_chars = max_buffer_chars
        self.phase = StreamPhase.IDLE
        self.deltas = 0

    @property
    def content(self) -> str:
        """The assistant reply accumulated so far."""
        return self._content

    @property
    def buffered_chars(self) -> int:
        pending = len(self._pending) if self._pending is not None else 0
        return len(self._line_buffer) + pending

    def feed(self, chunk: bytes) -> list[str]:
        """Process one chunk of raw bytes.

        Returns:
            The accumulated content after every delta applied from this
            chunk, in order. Empty when the chunk completed no delta.

        Raises:
            PayloadBudgetExceeded: Unresolved text grew past the budget.
            RuntimeError: The decoder already reached a terminal phase.
        """
        if self.phase in _TERMINAL_PHASES:
            raise RuntimeError(f"Cannot feed a {self.phase.value} stream")
        self.phase = StreamPhase.STREAMING

        self._line_buffer += self._byte_decoder.decode(chunk)
        updates: list[str] = []

        while "\n" in self._line_buffer:
            line, self._line_buffer = self._line_buffer.split("\n", 1)
            if line.endswith("\r"):
                line = line[:-1]

            payload = self._resolve_payload(line)
            if payload is None:
                continue
            if payload == DONE_SENTINEL:
                # Ends this chunk's batch only; the transport decides when we're done.
                logger.debug("sse_done_sentinel", deltas=self.deltas)
                break

            text = self._parse_delta(payload)
            if text:
                self._content += text
                self.deltas += 1
                updates.append(self._content)

        self._check_budget()
        return updates

    def finish(self) -> str:
        """Mark the stream as ended by the transport and return the final reply."""
        if self.phase in _TERMINAL_PHASES:
            return self._content

        self._line_buffer += self._byte_decoder.decode(b"", final=True)
        if self._line_buffer.strip() or self._pending is not None:
            logger.debug(
                "sse_stream_unterminated",
                leftover_chars=self.buffered_chars,
            )
        self.phase = StreamPhase.COMPLETED
        return self._content

    def fail(self) -> None:
        self.phase = StreamPhase.FAILED

    def cancel(self) -> None:
        if self.phase not in _TERMINAL_PHASES:
            self.phase = StreamPhase.CANCELLED

    def _resolve_payload(self, line: str) -> str | None:
        """Return the payload carried by ``line``, or None if the line is skipped."""
        if self._pending is not None:
            if _is_continuation(line):
                return self._pending + line
            self._discard_pending(reason="superseded")

        if not line.strip() or line.startswith(":"):
            return None
        if not line.startswith(DATA_PREFIX):
            return None
        return line[len(DATA_PREFIX):].strip()

    def _parse_delta(self, payload: str) -> str | None:
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            self._hold_pending(payload)
            return None

        self._pending = None
        self._pending_attempts = 0

        try:
            content = event["choices"][0]["delta"].get("content")
        except (KeyError, IndexError, TypeError, AttributeError):
            return None
        return content if isinstance(content, str) else None

    def _hold_pending(self, payload: str) -> None:
        self._pending_attempts += 1
        if self._pending_attempts > self._max_payload_retries:
            self._discard_pending(reason="retries_exhausted", payload=payload)
            return
        self._pending = payload
        logger.debug(
            "sse_payload_incomplete",
            attempt=self._pending_attempts,
            payload_length=len(payload),
        )

    def _discard_pending(self, reason: str, payload: str | None = None) -> None:
        dropped = payload if payload is not None else self._pending or ""
        logger.warning(
            "sse_payload_discarded",
            reason=reason,
            attempts=self._pending_attempts,
            payload_preview=dropped[:80],
        )
        self._pending = None
        self._pending_attempts = 0

    def _check_budget(self) -> None:
        buffered = self.buffered_chars
        if buffered > self._max_buffer_chars:
            self.phase = StreamPhase.FAILED
            logger.error(
                "sse_buffer_budget_exceeded",
                buffered_chars=buffered,
                limit=self._max_buffer_chars,
            )
            raise PayloadBudgetExceeded(
                f"Unresolved stream text exceeded {self._max_buffer_chars} chars",
                buffered_chars=buffered,
                limit=self._max_buffer_chars,
            )


def _is_continuation(line: str) -> bool:
    stripped = line.strip()
    if not stripped or stripped.startswith(":"):
        return False
    return _FIELD_LINE.match(line) is None
