"""Chat assistant module."""

from kasa_assistant.chat.client import StreamingChatClient
from kasa_assistant.chat.exceptions import (
    ConnectionFailed,
    PayloadBudgetExceeded,
    StreamError,
    TransportInterrupted,
)
from kasa_assistant.chat.models import ConversationMessage
from kasa_assistant.chat.session import ChatSession, ChatSessionStore
from kasa_assistant.chat.stream import SSEStreamDecoder, StreamPhase

__all__ = [
    "ChatSession",
    "ChatSessionStore",
    "ConnectionFailed",
    "ConversationMessage",
    "PayloadBudgetExceeded",
    "SSEStreamDecoder",
    "StreamError",
    "StreamPhase",
    "StreamingChatClient",
    "TransportInterrupted",
]
