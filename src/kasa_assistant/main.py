"""Application entrypoint - aiohttp server for the KASA chat assistant."""

import asyncio
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog
from aiohttp import web
from aiohttp.web import Application, Request, Response, StreamResponse, run_app
from pydantic import ValidationError

from kasa_assistant.chat.client import StreamingChatClient
from kasa_assistant.chat.models import ChatRequest
from kasa_assistant.chat.session import ChatSessionStore
from kasa_assistant.config import Settings, get_settings

_SHARED_PROCESSORS = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def _message_handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def configure_logging(
    log_level: str = "INFO",
    log_file: str = "",
    log_file_max_bytes: int = 10_485_760,
    log_file_backup_count: int = 5,
) -> None:
    """Route structlog events through the standard library root logger.

    Events always go to the console. With ``log_file`` set they are also
    written to a size-rotated file, and rendered as JSON lines instead of
    the colored console format.

    Args:
        log_level: Level name; unknown names fall back to INFO.
        log_file: Path to the log file, or empty for console only.
        log_file_max_bytes: Rotate the file once it reaches this size.
        log_file_backup_count: Rotated files to keep.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers = [_message_handler(logging.StreamHandler(), level)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            filename=log_file,
            maxBytes=log_file_max_bytes,
            backupCount=log_file_backup_count,
            encoding="utf-8",
        )
        handlers.append(_message_handler(rotating, level))

    root_logger = logging.root
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    for handler in handlers:
        root_logger.addHandler(handler)

    renderer = (
        structlog.processors.JSONRenderer() if log_file
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[*_SHARED_PROCESSORS, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def _sse_event(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


async def health(request: Request) -> Response:
    """Health check endpoint."""
    return web.json_response({"status": "healthy"})


async def chat_history(request: Request) -> Response:
    store = request.app["session_store"]
    if store is None:
        return web.json_response({"error": "Chat assistant is not configured"}, status=503)

    session = store.get_or_create(request.match_info["session_id"])
    return web.json_response({
        "messages": [m.model_dump() for m in session.messages],
        "is_loading": session.is_loading,
    })


async def chat_send(request: Request) -> StreamResponse:
    """Run one chat exchange and re-stream the growing reply to the browser."""
    store = request.app["session_store"]
    if store is None:
        return web.json_response({"error": "Chat assistant is not configured"}, status=503)

    try:
        body = ChatRequest.model_validate(await request.json())
    except (ValidationError, ValueError):
        return web.json_response({"error": "Expected a JSON body with a non-empty 'message'"}, status=400)

    session_id = request.match_info["session_id"]
    session = store.get_or_create(session_id)
    if session.is_loading:
        return web.json_response({"error": "A reply is already streaming"}, status=409)
    # No await between the loading check and the claim.
    if session.begin(body.message) is None:
        return web.json_response({"error": "Message must not be blank"}, status=400)

    updates: asyncio.Queue = asyncio.Queue()
    exchange = asyncio.create_task(
        session.stream_reply(on_change=lambda m: updates.put_nowait(m.content))
    )
    exchange.add_done_callback(lambda _: updates.put_nowait(None))

    logger.info("chat_exchange_start", session_id=session_id, message_length=len(body.message))

    response = web.StreamResponse(
        headers={"Content-Type": "text/event-stream", "Cache-Control": "no-cache"}
    )
    try:
        await response.prepare(request)
        while True:
            content = await updates.get()
            if content is None:
                break
            await response.write(_sse_event(json.dumps({"content": content})))
        await response.write(_sse_event("[DONE]"))
    except ConnectionResetError:
        logger.info("chat_client_disconnected", session_id=session_id)
    finally:
        if not exchange.done():
            session.cancel()
        # Cancellation stops updates; the exchange still finishes its current chunk.
        await exchange

    return response


async def chat_clear(request: Request) -> Response:
    store = request.app["session_store"]
    if store is None:
        return web.json_response({"error": "Chat assistant is not configured"}, status=503)

    cleared = store.clear(request.match_info["session_id"])
    return web.json_response({"cleared": cleared})


async def _close_chat_client(app: Application) -> None:
    client = app["chat_client"]
    if client is not None:
        await client.close()


def create_app(
    settings: Settings | None = None,
    chat_client: StreamingChatClient | None = None,
) -> Application:
    """Create and configure the aiohttp application."""
    settings = settings or get_settings()

    # Chat assistant is optional: without an endpoint the chat routes answer 503
    session_store = None
    if chat_client is None and settings.chat_enabled:
        chat_client = StreamingChatClient(settings)
    if chat_client is not None:
        session_store = ChatSessionStore(
            chat_client,
            ttl=settings.chat_session_ttl,
            maxsize=settings.chat_session_maxsize,
        )
        logger.info("chat_client_initialized", url=settings.chat_url)
    else:
        logger.info("chat_client_disabled", reason="CHAT_URL or CHAT_API_KEY not set")

    app = Application()
    app["chat_client"] = chat_client
    app["session_store"] = session_store
    app.on_cleanup.append(_close_chat_client)

    app.router.add_get("/health", health)
    app.router.add_get("/api/chat/{session_id}", chat_history)
    app.router.add_post("/api/chat/{session_id}", chat_send)
    app.router.add_delete("/api/chat/{session_id}", chat_clear)

    return app


def main() -> None:
    """Run the assistant server."""
    settings = get_settings()
    configure_logging(
        log_level=settings.log_level,
        log_file=settings.log_file,
        log_file_max_bytes=settings.log_file_max_bytes,
        log_file_backup_count=settings.log_file_backup_count,
    )

    logger.info(
        "starting_assistant_server",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )

    app = create_app(settings)
    run_app(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
