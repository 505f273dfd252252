"""Tests for ChatSession state handling and ChatSessionStore."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import make_transport, sse_line
from kasa_assistant.chat.client import StreamingChatClient
from kasa_assistant.chat.exceptions import ConnectionFailed, TransportInterrupted
from kasa_assistant.chat.prompts import FALLBACK_MESSAGE, GREETING_MESSAGE
from kasa_assistant.chat.session import ChatSession, ChatSessionStore


def _fake_client(deltas=(), error=None):
    """Mock client that replays accumulated ``deltas`` then optionally fails."""

    async def _send(history, on_update=None, cancelled=None):
        content = ""
        for delta in deltas:
            content += delta
            if on_update and not (cancelled and cancelled.is_set()):
                on_update(content)
        if error is not None:
            raise error
        return content

    client = MagicMock()
    client.send_conversation = AsyncMock(side_effect=_send)
    return client


def test_new_session_has_greeting():
    """A new session starts closed, idle, with the greeting."""
    session = ChatSession(MagicMock())
    assert len(session.messages) == 1
    assert session.messages[0].role == "assistant"
    assert session.messages[0].content == GREETING_MESSAGE
    assert session.is_open is False
    assert session.is_loading is False


def test_toggle_open_state():
    """toggle() flips the panel state and returns it."""
    session = ChatSession(MagicMock())
    assert session.toggle() is True
    assert session.toggle() is False


@pytest.mark.asyncio
async def test_send_streams_into_placeholder():
    """Updates stream into a single assistant placeholder."""
    client = _fake_client(deltas=["Permits ", "take 5 days."])
    session = ChatSession(client)
    changes = []

    reply = await session.send("How long?", on_change=lambda m: changes.append(m.content))

    assert reply is session.messages[-1]
    assert reply.role == "assistant"
    assert reply.content == "Permits take 5 days."
    assert changes == ["Permits ", "Permits take 5 days."]
    assert [m.role for m in session.messages] == ["assistant", "user", "assistant"]
    assert session.is_loading is False


@pytest.mark.asyncio
async def test_history_excludes_placeholder_and_placeholder_exists_during_stream():
    """The request history omits the empty placeholder the visitor already sees."""
    seen = []

    async def _send(history, on_update=None, cancelled=None):
        seen.append([m.model_copy() for m in session.messages])
        on_update("ok")
        return "ok"

    client = MagicMock()
    client.send_conversation = AsyncMock(side_effect=_send)
    session = ChatSession(client)

    await session.send("Hi")

    history = client.send_conversation.call_args.args[0]
    assert [(m.role, m.content) for m in history] == [
        ("assistant", GREETING_MESSAGE),
        ("user", "Hi"),
    ]
    # Exactly one empty assistant placeholder when streaming begins
    at_start = seen[0]
    assert at_start[-1].role == "assistant"
    assert at_start[-1].content == ""
    assert sum(1 for m in at_start if m.role == "assistant" and m.content == "") == 1


@pytest.mark.asyncio
async def test_transport_error_replaces_partial_reply_with_fallback():
    """A broken stream replaces the partial reply with the fallback."""
    client = _fake_client(deltas=["Hel"], error=TransportInterrupted("reset"))
    session = ChatSession(client)
    changes = []

    reply = await session.send("Hello?", on_change=lambda m: changes.append(m.content))

    assert reply.content == FALLBACK_MESSAGE
    assert changes == ["Hel", FALLBACK_MESSAGE]
    assert session.is_loading is False
    # Exactly one finalized assistant reply after the failure
    assert [m.role for m in session.messages] == ["assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_connection_failure_shows_fallback():
    """A refused connection shows the fallback reply."""
    client = _fake_client(error=ConnectionFailed("HTTP 500", status_code=500))
    session = ChatSession(client)

    reply = await session.send("Hello?")

    assert reply.content == FALLBACK_MESSAGE


@pytest.mark.asyncio
async def test_blank_message_is_ignored():
    """Whitespace-only messages are not sent."""
    client = _fake_client(deltas=["x"])
    session = ChatSession(client)

    assert await session.send("   ") is None
    assert len(session.messages) == 1
    client.send_conversation.assert_not_called()


@pytest.mark.asyncio
async def test_send_while_loading_is_ignored():
    """A second send while loading is dropped."""
    release = asyncio.Event()

    async def _slow(history, on_update=None, cancelled=None):
        await release.wait()
        return ""

    client = MagicMock()
    client.send_conversation = AsyncMock(side_effect=_slow)
    session = ChatSession(client)

    first = asyncio.create_task(session.send("one"))
    await asyncio.sleep(0)
    assert session.is_loading is True
    assert await session.send("two") is None

    release.set()
    await first
    assert client.send_conversation.call_count == 1


@pytest.mark.asyncio
async def test_cancel_stops_updates_mid_stream():
    """cancel() freezes the reply at the last delivered update."""
    release = asyncio.Event()

    async def _stream(history, on_update=None, cancelled=None):
        on_update("first")
        await release.wait()
        if not cancelled.is_set():
            on_update("first second")
        return "first second"

    client = MagicMock()
    client.send_conversation = AsyncMock(side_effect=_stream)
    session = ChatSession(client)

    task = asyncio.create_task(session.send("go"))
    await asyncio.sleep(0)
    session.cancel()
    release.set()
    reply = await task

    assert reply.content == "first"


@pytest.mark.asyncio
async def test_closed_session_refuses_sends():
    """A closed session ignores sends."""
    client = _fake_client(deltas=["x"])
    session = ChatSession(client)
    session.close()

    assert session.closed is True
    assert await session.send("hello") is None
    client.send_conversation.assert_not_called()


@pytest.mark.asyncio
async def test_end_to_end_with_streaming_client(settings):
    """Session and real client assemble the streamed reply."""
    body = (sse_line("Apply ") + sse_line("online.") + "data: [DONE]\n").encode()
    session = ChatSession(StreamingChatClient(settings, transport=make_transport([body])))

    reply = await session.send("How do I apply?")

    assert reply.content == "Apply online."


@pytest.mark.asyncio
async def test_end_to_end_mid_stream_failure(settings):
    """A mid-stream read error ends in the fallback, not the partial text."""
    transport = make_transport(
        [sse_line("Hel").encode()], error=httpx.ReadError("reset")
    )
    session = ChatSession(StreamingChatClient(settings, transport=transport))

    reply = await session.send("Hello?")

    assert reply.content == FALLBACK_MESSAGE
    assert reply.content != "Hel"


def test_begin_claims_session_without_awaiting():
    """begin() marks the session loading and appends the placeholder immediately."""
    session = ChatSession(MagicMock())

    placeholder = session.begin("Is a banner permit needed?")

    assert placeholder is session.messages[-1]
    assert placeholder.content == ""
    assert session.is_loading is True
    assert session.begin("Another question") is None
    assert [m.role for m in session.messages] == ["assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_stream_reply_completes_claimed_exchange():
    """stream_reply() fills the placeholder claimed by begin()."""
    client = _fake_client(deltas=["Yes, ", "for banners."])
    session = ChatSession(client)
    placeholder = session.begin("Is a banner permit needed?")

    reply = await session.stream_reply()

    assert reply is placeholder
    assert reply.content == "Yes, for banners."
    assert session.is_loading is False


@pytest.mark.asyncio
async def test_stream_reply_requires_begin():
    """stream_reply() without a claimed exchange is a caller error."""
    session = ChatSession(_fake_client())
    with pytest.raises(RuntimeError):
        await session.stream_reply()


class TestChatSessionStore:
    def test_get_or_create_returns_same_session(self):
        """The same ID returns the same session."""
        store = ChatSessionStore(MagicMock(), ttl=300, maxsize=10)
        s1 = store.get_or_create("visitor-1")
        s2 = store.get_or_create("visitor-1")
        assert s1 is s2

    def test_get_unknown_returns_none(self):
        store = ChatSessionStore(MagicMock(), ttl=300, maxsize=10)
        assert store.get("nobody") is None

    def test_clear_closes_session(self):
        """clear() closes and forgets a session."""
        store = ChatSessionStore(MagicMock(), ttl=300, maxsize=10)
        session = store.get_or_create("visitor-1")

        assert store.clear("visitor-1") is True
        assert session.closed is True
        assert store.get("visitor-1") is None
        assert store.clear("visitor-1") is False

    def test_maxsize_evicts(self):
        """The oldest session is evicted past maxsize."""
        store = ChatSessionStore(MagicMock(), ttl=300, maxsize=2)
        store.get_or_create("a")
        store.get_or_create("b")
        store.get_or_create("c")
        assert store.get("a") is None
        assert store.get("c") is not None
