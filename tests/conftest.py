"""Pytest fixtures for kasa-assistant tests."""

import asyncio
import json
import os
from unittest.mock import patch

import httpx
import pytest

from kasa_assistant.config import Settings


@pytest.fixture
def mock_env_vars():
    """Mock environment variables for testing."""
    env_vars = {
        "CHAT_URL": "http://chat.test/functions/v1/kasa-assistant",
        "CHAT_API_KEY": "test-publishable-key",
        "HOST": "127.0.0.1",
        "PORT": "8080",
        "LOG_LEVEL": "DEBUG",
    }
    with patch.dict(os.environ, env_vars, clear=False):
        yield env_vars


@pytest.fixture
def settings(mock_env_vars) -> Settings:
    """Create Settings instance with mocked environment."""
    return Settings()


def sse_line(content: str | None = None, **delta) -> str:
    """One ``data:`` line carrying an OpenAI-style content delta."""
    if content is not None:
        delta["content"] = content
    return "data: " + json.dumps({"choices": [{"delta": delta}]}, ensure_ascii=False) + "\n"


def chunked(body: bytes, size: int) -> list[bytes]:
    """Split ``body`` into byte chunks of at most ``size`` bytes."""
    return [body[i:i + size] for i in range(0, len(body), size)]


def make_transport(chunks, status_code=200, error=None, captured=None, gate=None, delay=0.0):
    """httpx MockTransport that streams ``chunks`` then optionally raises ``error``.

    With ``gate`` set, everything after the first chunk waits for the event.
    ``delay`` sleeps between later chunks.
    """

    async def _stream():
        for index, chunk in enumerate(chunks):
            if index > 0:
                if gate is not None:
                    await gate.wait()
                if delay:
                    await asyncio.sleep(delay)
            yield chunk
        if error is not None:
            raise error

    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return httpx.Response(
            status_code,
            headers={"Content-Type": "text/event-stream"},
            content=_stream(),
        )

    return httpx.MockTransport(handler)


class FakeRecordStore:
    """In-memory stand-in for the hosted record store."""

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.subscriptions: list[tuple[str, dict, object]] = []
        self._next_id = 1

    async def insert(self, table, record):
        record_id = f"rec-{self._next_id}"
        self._next_id += 1
        row = {
            "id": record_id,
            "status": "pending_payment",
            "amount_due": 50000,
            "amount_paid": 0,
            "created_at": f"2026-10-{self._next_id:02d}T09:00:00+00:00",
            **record,
        }
        self.tables.setdefault(table, []).append(row)
        return record_id

    async def query(self, table, filters):
        return [
            dict(row) for row in self.tables.get(table, [])
            if all(row.get(k) == v for k, v in filters.items())
        ]

    async def update(self, table, record_id, patch):
        for row in self.tables.get(table, []):
            if row["id"] == record_id:
                row.update(patch)
                for sub_table, filters, on_change in self.subscriptions:
                    if sub_table == table and all(row.get(k) == v for k, v in filters.items()):
                        on_change(dict(row))
                return
        raise KeyError(record_id)

    def subscribe(self, table, filters, on_change):
        entry = (table, filters, on_change)
        self.subscriptions.append(entry)
        return lambda: self.subscriptions.remove(entry)


@pytest.fixture
def record_store():
    return FakeRecordStore()
