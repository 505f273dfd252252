"""Data models for the chat assistant."""

from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["user", "assistant"]


class ConversationMessage(BaseModel):
    """A single message in the chat widget conversation.

    Messages are sent in chronological order. The trailing assistant
    placeholder is the only message mutated after creation.
    """

    role: Role
    content: str = ""


class ChatRequest(BaseModel):
    """Body of a chat send request from the browser."""

    message: str = Field(..., min_length=1, description="Text typed by the visitor")
