"""Chat widget state and the per-visitor session store."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog
from cachetools import TTLCache

from kasa_assistant.chat.client import StreamingChatClient
from kasa_assistant.chat.exceptions import StreamError
from kasa_assistant.chat.models import ConversationMessage
from kasa_assistant.chat.prompts import FALLBACK_MESSAGE, GREETING_MESSAGE

logger = structlog.get_logger()

MessageCallback = Callable[[ConversationMessage], None]


class ChatSession:
    """Conversation state owned by one chat widget.

    The streaming client only emits update events; this container decides
    what the visitor sees. At most one exchange is in flight at a time.
    """

    def __init__(
        self,
        client: StreamingChatClient,
        greeting: str = GREETING_MESSAGE,
    ) -> None:
        self._client = client
        self.messages: list[ConversationMessage] = [
            ConversationMessage(role="assistant", content=greeting)
        ]
        self.is_open = False
        self.is_loading = False
        self._closed = False
        self._cancelled: asyncio.Event | None = None
        self._history: list[ConversationMessage] = []
        self._placeholder: ConversationMessage | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def toggle(self) -> bool:
        """Open or close the chat panel. Returns the new state."""
        self.is_open = not self.is_open
        return self.is_open

    def begin(self, text: str) -> ConversationMessage | None:
        """Claim the session for a new exchange.

        Appends the visitor message and an empty assistant placeholder and
        marks the session as loading, without suspending. Returns the
        placeholder, or None when the message is ignored (blank text, an
        exchange already in flight, or a closed session).
        """
        if not text.strip() or self.is_loading or self._closed:
            return None

        self.messages.append(ConversationMessage(role="user", content=text))
        self._history = list(self.messages)
        self._placeholder = ConversationMessage(role="assistant", content="")
        self.messages.append(self._placeholder)
        self.is_loading = True
        self._cancelled = asyncio.Event()
        return self._placeholder

    async def stream_reply(
        self,
        on_change: MessageCallback | None = None,
    ) -> ConversationMessage:
        """Stream the reply for the exchange claimed by ``begin``."""
        if not self.is_loading or self._placeholder is None or self._cancelled is None:
            raise RuntimeError("No exchange in flight; call begin() first")

        placeholder = self._placeholder
        cancelled = self._cancelled

        def apply_update(content: str) -> None:
            placeholder.content = content
            if on_change is not None:
                on_change(placeholder)

        try:
            await self._client.send_conversation(
                self._history, on_update=apply_update, cancelled=cancelled
            )
        except StreamError as e:
            logger.error(
                "chat_exchange_failed",
                error=str(e),
                error_type=type(e).__name__,
                partial_length=len(placeholder.content),
            )
            placeholder.content = FALLBACK_MESSAGE
            if on_change is not None and not cancelled.is_set():
                on_change(placeholder)
        finally:
            self.is_loading = False
            self._history = []
            self._placeholder = None
            self._cancelled = None

        return placeholder

    async def send(
        self,
        text: str,
        on_change: MessageCallback | None = None,
    ) -> ConversationMessage | None:
        """Send a visitor message and stream the assistant's reply.

        Returns the finalized assistant message, or None when ``begin``
        ignored the message.
        """
        if self.begin(text) is None:
            return None
        return await self.stream_reply(on_change)

    def cancel(self) -> None:
        """Stop delivering updates for the exchange in flight, if any."""
        if self._cancelled is not None:
            self._cancelled.set()

    def close(self) -> None:
        """Tear the session down; later sends are ignored."""
        self._closed = True
        self.cancel()


class ChatSessionStore:
    """Maps visitor session IDs to chat sessions with TTL expiry."""

    def __init__(
        self,
        client: StreamingChatClient,
        ttl: int = 3600,
        maxsize: int = 1000,
    ) -> None:
        self._client = client
        self._cache: TTLCache[str, ChatSession] = TTLCache(maxsize=maxsize, ttl=ttl)
        logger.info("chat_session_store_initialized", ttl=ttl, maxsize=maxsize)

    def get(self, session_id: str) -> ChatSession | None:
        """Get a session, or None if not found/expired."""
        return self._cache.get(session_id)

    def get_or_create(self, session_id: str) -> ChatSession:
        if session_id not in self._cache:
            self._cache[session_id] = ChatSession(self._client)
            logger.debug("chat_session_created", session_id=session_id)
        return self._cache[session_id]

    def clear(self, session_id: str) -> bool:
        """Close and forget a session. Returns True if it existed."""
        session = self._cache.pop(session_id, None)
        if session is None:
            return False
        session.close()
        logger.debug("chat_session_cleared", session_id=session_id)
        return True
