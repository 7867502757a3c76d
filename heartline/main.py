"""
FastAPI application: the Heartline entry point.

  POST /api/chat/messages/stream   streaming relay (text/event-stream)
  POST /api/chat/messages          non-streaming relay (JSON)
  GET  /api/chat/conversations     caller's conversations, most recent first
  POST /api/chat/conversations     start a conversation with a companion
  GET  /api/chat/conversations/{id}/messages   persisted transcript (reload path)
  GET  /api/models                 model catalogue
  GET  /api/health

Caller identity comes from the auth layer in front of us as X-User-Id /
X-User-Tier headers; quota and rate checks have already passed by then.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from heartline.backends.catalog import MODELS
from heartline.backends.openai_compat import CompletionBackend
from heartline.config import get_config
from heartline.errors import AuthenticationError, NotFoundError, RelayError, ValidationError
from heartline.relay import Caller, ExchangeRequest, QueueTransport, RelayService
from heartline.storage.sqlite_store import SQLiteStore
from heartline.wiretap import WireLog

VERSION = "0.3.0"

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
sqlite_store: SQLiteStore | None = None
relay_service: RelayService | None = None
wire_log: WireLog | None = None

# Relay tasks outlive their HTTP response when the client disconnects.
_exchange_tasks: set[asyncio.Task] = set()


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global sqlite_store, relay_service, wire_log

    cfg = get_config()
    _setup_logging(cfg)

    sqlite_store = SQLiteStore(cfg["storage"]["sqlite_path"])

    wire_cfg = cfg.get("wiretap", {})
    wire_log = WireLog(wire_cfg.get("path", "./data/wire.jsonl")) if wire_cfg.get("enabled", True) else None

    backend = CompletionBackend.from_config(cfg)
    relay_service = RelayService.from_config(cfg, sqlite_store, backend, wire=wire_log)

    if not backend.api_key:
        logger.warning("No backend.api_key configured; the provider will likely answer 401")
    logger.info(
        "Heartline started on %s:%s, backend %s (%s)",
        cfg.get("server", {}).get("host", "0.0.0.0"),
        cfg.get("server", {}).get("port", 8000),
        backend.name,
        backend.url,
    )
    logger.info(
        "Relay: history_limit=%d, upstream_timeout=%.0fs, single_flight=%s, stream_upstream=%s",
        relay_service.assembler.history_limit,
        relay_service.upstream_timeout,
        relay_service.guard is not None,
        relay_service.stream_upstream,
    )

    yield

    if _exchange_tasks:
        logger.info("Waiting for %d in-flight exchanges", len(_exchange_tasks))
        await asyncio.gather(*_exchange_tasks, return_exceptions=True)
    if wire_log:
        wire_log.close()
    logger.info("Heartline shutting down")


app = FastAPI(
    title="Heartline",
    description="Streaming completion relay for AI companions.",
    version=VERSION,
    lifespan=lifespan,
)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    if exc.status_code >= 500:
        logger.warning("%s %s → %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(
        {"success": False, "kind": exc.kind, "message": exc.message},
        status_code=exc.status_code,
    )


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def _caller(request: Request) -> Caller:
    user_id = request.headers.get("x-user-id", "").strip()
    if not user_id:
        raise AuthenticationError("Not authenticated")
    tier = request.headers.get("x-user-tier", "free").strip().lower() or "free"
    return Caller(user_id=user_id, tier=tier)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _exchange_tasks.add(task)
    task.add_done_callback(_exchange_tasks.discard)
    return task


class RelayStreamResponse(StreamingResponse):
    """
    SSE response drained from a QueueTransport.

    The transport is closed however the response ends: normal completion,
    a disconnect noticed by Starlette, a failed write, or a client that was
    gone before the first event was pulled. The relay task then stops at its
    next send and closes the upstream request.
    """

    def __init__(self, transport: QueueTransport):
        super().__init__(
            transport.stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache, no-transform",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
        self.transport = transport

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.transport.close()


# ---------------------------------------------------------------------------
# Relay endpoints
# ---------------------------------------------------------------------------

@app.post("/api/chat/messages/stream")
async def stream_message(request: Request):
    """
    Streaming relay. Validation, ownership, the user-turn write and opening
    the upstream stream all happen before the response starts, so those
    failures come back as ordinary HTTP errors. Anything later is reported
    in-band as a `data: {"error": ...}` event.
    """
    caller = _caller(request)
    exchange = ExchangeRequest.from_body(await _json_body(request))

    session = relay_service.session(caller, exchange, stream=True)
    await session.begin()

    transport = QueueTransport()
    if await request.is_disconnected():
        # Left while upstream was opening; the relay closes it on first send.
        transport.close()
    _spawn(session.relay(transport))

    return RelayStreamResponse(transport)


@app.post("/api/chat/messages")
async def send_message(request: Request):
    """Non-streaming relay: one JSON answer once the completion is saved."""
    caller = _caller(request)
    exchange = ExchangeRequest.from_body(await _json_body(request))

    session = relay_service.session(caller, exchange, stream=False)
    message = await session.complete()
    return JSONResponse({
        "id": message.id,
        "content": message.content,
        "role": "assistant",
        "timestamp": message.created_at,
        "conversationId": message.conversation_id,
    })


# ---------------------------------------------------------------------------
# Conversation plumbing
# ---------------------------------------------------------------------------

@app.get("/api/chat/conversations")
async def list_conversations(request: Request, limit: int = 50):
    caller = _caller(request)
    conversations = await asyncio.to_thread(sqlite_store.list_conversations, caller.user_id, limit)
    return JSONResponse([c.to_client_format() for c in conversations])


@app.post("/api/chat/conversations")
async def create_conversation(request: Request):
    caller = _caller(request)
    body = await _json_body(request)
    companion_id = body.get("companionId")
    if not isinstance(companion_id, str) or not companion_id:
        raise ValidationError("companionId is required")
    title = body.get("title") or ""

    conversation = await asyncio.to_thread(
        sqlite_store.create_conversation, caller.user_id, companion_id, str(title),
    )
    return JSONResponse(conversation.to_client_format(), status_code=201)


@app.get("/api/chat/conversations/{conversation_id}/messages")
async def get_messages(conversation_id: str, request: Request):
    caller = _caller(request)
    conversation = await asyncio.to_thread(
        sqlite_store.find_conversation, conversation_id, caller.user_id,
    )
    if conversation is None:
        raise NotFoundError("Conversation not found")
    messages = await asyncio.to_thread(sqlite_store.get_messages, conversation_id)
    return JSONResponse([m.to_client_format() for m in messages])


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------

@app.get("/api/models")
async def list_models():
    return JSONResponse({"models": [m.to_client_format() for m in MODELS]})


@app.get("/api/health")
async def health():
    return JSONResponse({
        "status": "ok",
        "version": VERSION,
        "in_flight": len(_exchange_tasks),
        "storage": sqlite_store.get_stats() if sqlite_store else {},
    })
