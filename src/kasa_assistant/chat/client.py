"""Streaming client for the hosted chat completion endpoint."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

import httpx
import structlog

from kasa_assistant.chat.exceptions import (
    ConnectionFailed,
    StreamError,
    TransportInterrupted,
)
from kasa_assistant.chat.models import ConversationMessage
from kasa_assistant.chat.stream import SSEStreamDecoder
from kasa_assistant.config import Settings

logger = structlog.get_logger()

UpdateCallback = Callable[[str], None]


class StreamingChatClient:
    """Sends a conversation to the chat endpoint and streams the reply.

    The reply arrives as an event stream of OpenAI-style deltas. Raw bytes
    are handed to an ``SSEStreamDecoder``; every delta it applies is passed
    to the caller's update callback as the full reply so far.
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = settings.chat_url
        self._api_key = settings.chat_api_key
        self._timeout = httpx.Timeout(
            settings.chat_timeout, connect=settings.chat_connect_timeout
        )
        self._max_payload_retries = settings.stream_max_payload_retries
        self._max_buffer_chars = settings.stream_max_buffer_chars
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            )
        return self._http_client

    def _build_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    async def send_conversation(
        self,
        history: Sequence[ConversationMessage],
        on_update: UpdateCallback | None = None,
        cancelled: asyncio.Event | None = None,
    ) -> str:
        """Stream the assistant's reply to ``history``.

        Args:
            history: The conversation so far, oldest first. Must not be empty.
            on_update: Called with the accumulated reply after every delta.
            cancelled: Once set, no further callbacks fire and the reply
                accumulated so far is returned.

        Returns:
            The final assistant reply.

        Raises:
            ConnectionFailed: The endpoint refused the request or never answered.
            TransportInterrupted: The stream broke after it had opened.
            PayloadBudgetExceeded: The stream held too much unresolved text.
        """
        if not history:
            raise ValueError("history must contain at least one message")

        payload = {"messages": [message.model_dump() for message in history]}
        decoder = SSEStreamDecoder(
            max_payload_retries=self._max_payload_retries,
            max_buffer_chars=self._max_buffer_chars,
        )
        client = await self._get_http_client()
        opened = False

        logger.info("chat_stream_start", message_count=len(history))

        try:
            async with client.stream(
                "POST", self._url, json=payload, headers=self._build_headers()
            ) as response:
                await self._ensure_stream(response)
                opened = True

                async for chunk in response.aiter_bytes():
                    if _is_set(cancelled):
                        break
                    for snapshot in decoder.feed(chunk):
                        if _is_set(cancelled):
                            break
                        if on_update is not None:
                            on_update(snapshot)
                    if _is_set(cancelled):
                        break
        except StreamError:
            decoder.fail()
            raise
        except (httpx.HTTPError, httpx.StreamError) as e:
            decoder.fail()
            logger.error(
                "chat_stream_error",
                error=str(e),
                error_type=type(e).__name__,
                opened=opened,
                deltas=decoder.deltas,
            )
            if not opened:
                raise ConnectionFailed(f"Failed to start stream: {e}") from e
            raise TransportInterrupted(f"Stream interrupted: {e}") from e

        if _is_set(cancelled):
            decoder.cancel()
            logger.info("chat_stream_cancelled", deltas=decoder.deltas)
            return decoder.content

        content = decoder.finish()
        logger.info(
            "chat_stream_complete",
            deltas=decoder.deltas,
            answer_length=len(content),
        )
        return content

    async def _ensure_stream(self, response: httpx.Response) -> None:
        """Reject responses that cannot carry a reply stream."""
        if response.is_success and response.status_code != httpx.codes.NO_CONTENT:
            return
        body = await response.aread()
        logger.error(
            "chat_stream_rejected",
            status_code=response.status_code,
            body_preview=body[:200].decode("utf-8", errors="replace"),
        )
        raise ConnectionFailed(
            f"Chat endpoint returned HTTP {response.status_code}",
            status_code=response.status_code,
        )

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()


def _is_set(event: asyncio.Event | None) -> bool:
    return event is not None and event.is_set()
