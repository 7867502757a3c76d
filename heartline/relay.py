"""
Relay: the core of Heartline.

Turns one user message into (a) a durable, ordered transcript and (b) a live,
incrementally delivered assistant reply.

One RelaySession per exchange, walking:

    Idle → UserTurnPersisted → UpstreamRequested → Streaming → Finalizing → Completed | Failed

  begin()  runs Idle..Streaming. Failures here are raised, so the HTTP layer
           can reject the request outright (nothing of the reply shown yet).
  relay()  runs Streaming..terminal against a ClientTransport. Failures here
           go to the client in-band as an SSE error event.

The user turn is persisted before anything goes upstream. The assistant turn
is persisted once, after the last delta was forwarded, and only if non-empty.
If the client goes away mid-stream the upstream request is closed and the
text forwarded so far is persisted as the reply.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum

from heartline.backends.base import DeltaSource, StreamDelta
from heartline.backends.catalog import resolve_model
from heartline.config import get_runtime_overrides
from heartline.errors import (
    ConflictError,
    EmptyCompletionError,
    NotFoundError,
    PersistenceError,
    RelayError,
    UpstreamError,
    ValidationError,
)
from heartline.flight_recorder import ExchangeRecord
from heartline.prompt import PromptAssembler
from heartline.sse import DONE_EVENT, format_event
from heartline.storage.models import Message

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_TIMEOUT = 120.0


def _estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token for English text."""
    return max(1, len(text) // 4)


class RelayState(str, Enum):
    IDLE = "Idle"
    USER_TURN_PERSISTED = "UserTurnPersisted"
    UPSTREAM_REQUESTED = "UpstreamRequested"
    STREAMING = "Streaming"
    FINALIZING = "Finalizing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (RelayState.COMPLETED, RelayState.FAILED)


@dataclass(frozen=True)
class Caller:
    """Verified identity handed over by the auth layer."""
    user_id: str
    tier: str = "free"


@dataclass(frozen=True)
class ExchangeRequest:
    conversation_id: str
    companion_id: str
    content: str

    @classmethod
    def from_body(cls, body) -> "ExchangeRequest":
        """Validate an inbound relay body. Raises ValidationError."""
        if not isinstance(body, dict):
            raise ValidationError("request body must be a JSON object")

        content = body.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content is required")
        for key in ("conversationId", "companionId"):
            value = body.get(key)
            if not isinstance(value, str) or not value:
                raise ValidationError(f"{key} is required")

        return cls(
            conversation_id=body["conversationId"],
            companion_id=body["companionId"],
            content=content,
        )


# ---------------------------------------------------------------------------
# Client transports
# ---------------------------------------------------------------------------

class ClientDisconnected(Exception):
    """The outbound transport is gone; further writes cannot be delivered."""


class ClientTransport(abc.ABC):
    """Where the relay writes outbound SSE events for one exchange."""

    @abc.abstractmethod
    async def send(self, event: str) -> None:
        """Deliver one framed event. Raises ClientDisconnected if the client left."""
        ...

    async def finish(self) -> None:
        """No more events will follow."""
        return None


class NullTransport(ClientTransport):
    """Swallows everything. Used for the non-streaming request path."""

    async def send(self, event: str) -> None:
        return None


class QueueTransport(ClientTransport):
    """
    Decouples the relay from the HTTP response.

    The relay runs as its own task and pushes events into a queue; stream()
    drains it into the StreamingResponse. When the response generator is torn
    down (client disconnect), the transport is marked closed and the relay's
    next send() raises ClientDisconnected.
    """

    def __init__(self):
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self.closed = False

    async def send(self, event: str) -> None:
        if self.closed:
            raise ClientDisconnected()
        await self._queue.put(event)

    async def finish(self) -> None:
        await self._queue.put(None)

    def close(self) -> None:
        self.closed = True

    async def stream(self):
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    return
                yield event
        finally:
            self.close()


# ---------------------------------------------------------------------------
# Single-flight guard
# ---------------------------------------------------------------------------

class SingleFlight:
    """At most one in-flight exchange per conversation id."""

    def __init__(self):
        self._inflight: set[str] = set()

    def acquire(self, key: str) -> bool:
        if key in self._inflight:
            return False
        self._inflight.add(key)
        return True

    def release(self, key: str) -> None:
        self._inflight.discard(key)

    def __contains__(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

@dataclass
class ExchangeResult:
    state: RelayState
    user_message: Message | None = None
    assistant_message: Message | None = None
    error: RelayError | None = None
    cancelled: bool = False
    deltas_forwarded: int = 0
    updated_at: str | None = None
    record: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.state is RelayState.COMPLETED


class RelaySession:
    """One exchange, start to finish. Never reused."""

    def __init__(
        self,
        caller: Caller,
        request: ExchangeRequest,
        store,
        assembler: PromptAssembler,
        backend,
        model: str,
        stream: bool = True,
        upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT,
        history_limit: int | None = None,
        guard: SingleFlight | None = None,
        wire=None,
    ):
        self.caller = caller
        self.request = request
        self.store = store
        self.assembler = assembler
        self.backend = backend
        self.model = model
        self.stream = stream
        self.upstream_timeout = upstream_timeout
        self.history_limit = history_limit
        self.guard = guard
        self.wire = wire

        self.state = RelayState.IDLE
        self.record = ExchangeRecord(request.conversation_id, model)
        self.user_message: Message | None = None
        self.assistant_message: Message | None = None
        self.turns: list[dict] = []
        self.error: RelayError | None = None
        self.cancelled = False
        self.deltas_forwarded = 0
        self.updated_at: str | None = None

        self._source: DeltaSource | None = None
        self._deadline: float | None = None
        self._guarded = False
        self._accumulated: list[str] = []
        self.record.log(self.state.value, user=caller.user_id, tier=caller.tier)

    # ─ Helpers ────────────────────────────────────────────────────────────

    def _transition(self, state: RelayState, **details):
        self.state = state
        self.record.log(state.value, **details)

    async def _store_call(self, what: str, fn, *args):
        """Run a blocking store call off the event loop."""
        try:
            return await asyncio.to_thread(fn, *args)
        except (sqlite3.Error, ValueError, OSError) as e:
            raise PersistenceError(f"failed to {what}: {e}") from e

    def _remaining(self) -> float:
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise UpstreamError(f"upstream exceeded the {self.upstream_timeout:.0f}s ceiling")
        return remaining

    async def _next_delta(self, iterator) -> StreamDelta:
        try:
            return await asyncio.wait_for(iterator.__anext__(), self._remaining())
        except StopAsyncIteration:
            return StreamDelta(done=True)
        except asyncio.TimeoutError:
            raise UpstreamError(f"upstream exceeded the {self.upstream_timeout:.0f}s ceiling") from None

    async def _close_upstream(self):
        if self._source is not None:
            try:
                await self._source.aclose()
            except Exception as e:
                logger.warning("Closing upstream for %s failed: %s", self.request.conversation_id, e)

    def _release_guard(self):
        if self._guarded and self.guard is not None:
            self.guard.release(self.request.conversation_id)
            self._guarded = False

    def _wire_log(self, direction: str, role: str, content: str, kind: str = ""):
        if self.wire is None:
            return
        try:
            self.wire.log(
                direction=direction,
                role=role,
                content=content,
                model=self.model,
                conversation_id=self.request.conversation_id,
                kind=kind,
            )
        except OSError as e:
            logger.warning("Wire tap write failed: %s", e)

    async def _fail(self, error: RelayError):
        self.error = error
        self._transition(RelayState.FAILED, kind=error.kind, error=error.message)
        await self._close_upstream()
        self._release_guard()
        self._wire_log("error", "error", error.message, kind=error.kind)
        logger.warning(
            "Exchange %s on %s failed: %s: %s",
            self.record.id, self.request.conversation_id, error.kind, error.message,
        )

    def result(self) -> ExchangeResult:
        return ExchangeResult(
            state=self.state,
            user_message=self.user_message,
            assistant_message=self.assistant_message,
            error=self.error,
            cancelled=self.cancelled,
            deltas_forwarded=self.deltas_forwarded,
            updated_at=self.updated_at,
            record=self.record.to_json(),
        )

    # ─ Idle → Streaming ───────────────────────────────────────────────────

    async def begin(self) -> None:
        """
        Verify, persist the user turn, assemble the prompt, open upstream.
        On any failure the session ends Failed and the error is raised.
        """
        if self.state is not RelayState.IDLE:
            raise RuntimeError(f"begin() called in state {self.state.value}")
        try:
            await self._begin()
        except RelayError as e:
            await self._fail(e)
            raise
        except BaseException:
            await self._close_upstream()
            self._release_guard()
            raise

    async def _begin(self):
        req = self.request

        # Ownership before the guard: a foreign caller gets 404, never 409.
        conversation = await self._store_call(
            "look up conversation",
            self.store.find_conversation,
            req.conversation_id, self.caller.user_id, req.companion_id,
        )
        if conversation is None:
            raise NotFoundError("Conversation not found")

        if self.guard is not None:
            if not self.guard.acquire(req.conversation_id):
                raise ConflictError("another message is still being answered in this conversation")
            self._guarded = True

        user_message = Message(
            conversation_id=req.conversation_id,
            user_id=self.caller.user_id,
            companion_id=req.companion_id,
            role="user",
            content=req.content,
            model=self.model,
            token_count=_estimate_tokens(req.content),
        )
        self.user_message = await self._store_call("store user message", self.store.append_message, user_message)
        self._transition(RelayState.USER_TURN_PERSISTED, message_id=user_message.id)
        self._wire_log("inbound", "user", req.content)

        self.turns = await self._store_call(
            "read conversation history",
            self.assembler.assemble,
            req.conversation_id, req.content, user_message.id, self.history_limit,
        )
        self._deadline = time.monotonic() + self.upstream_timeout
        self._source = self.backend.open_source(self.turns, self.model, stream=self.stream)
        self._transition(RelayState.UPSTREAM_REQUESTED, turns=len(self.turns), stream=self.stream)

        try:
            await asyncio.wait_for(self._source.open(), self._remaining())
        except asyncio.TimeoutError:
            raise UpstreamError(f"upstream exceeded the {self.upstream_timeout:.0f}s ceiling") from None
        self._transition(RelayState.STREAMING)

    # ─ Streaming → terminal ───────────────────────────────────────────────

    async def relay(self, transport: ClientTransport) -> ExchangeResult:
        """
        Forward deltas to `transport` until the end marker or the client
        leaves, then finalize. Never raises RelayError: failures are reported
        in-band and in the returned result.
        """
        if self.state is not RelayState.STREAMING:
            raise RuntimeError(f"relay() called in state {self.state.value}")
        try:
            await self._pump(transport)
            await self._finalize(transport)
        except RelayError as e:
            await self._fail(e)
            await self._send_quietly(transport, format_event({"error": e.to_dict()}))
            await self._send_quietly(transport, DONE_EVENT)
        finally:
            await self._close_upstream()
            self._release_guard()
            self.record.close()
            await transport.finish()
        return self.result()

    async def run(self, transport: ClientTransport) -> ExchangeResult:
        """begin() + relay(), with setup failures also reported in-band."""
        try:
            await self.begin()
        except RelayError as e:
            await self._send_quietly(transport, format_event({"error": e.to_dict()}))
            await self._send_quietly(transport, DONE_EVENT)
            await transport.finish()
            return self.result()
        return await self.relay(transport)

    async def _send_quietly(self, transport: ClientTransport, event: str):
        try:
            await transport.send(event)
        except ClientDisconnected:
            pass

    async def _pump(self, transport: ClientTransport):
        iterator = aiter(self._source)
        while True:
            delta = await self._next_delta(iterator)
            if delta.done:
                return
            if not delta.text:
                continue
            try:
                await transport.send(format_event({"content": delta.text}))
            except ClientDisconnected:
                self.cancelled = True
                self.record.log("ClientDisconnected", forwarded=self.deltas_forwarded)
                logger.info(
                    "Client left exchange %s after %d deltas; closing upstream",
                    self.record.id, self.deltas_forwarded,
                )
                await self._close_upstream()
                return
            # Only text the client actually received counts towards the reply.
            self._accumulated.append(delta.text)
            self.deltas_forwarded += 1

    async def _finalize(self, transport: ClientTransport):
        self._transition(RelayState.FINALIZING, cancelled=self.cancelled, deltas=self.deltas_forwarded)
        text = "".join(self._accumulated)
        if not text:
            raise EmptyCompletionError("the companion returned an empty reply")

        req = self.request
        assistant = Message(
            conversation_id=req.conversation_id,
            user_id=self.caller.user_id,
            companion_id=req.companion_id,
            role="assistant",
            content=text,
            model=self.model,
            token_count=_estimate_tokens(text),
        )
        try:
            self.updated_at = await self._store_call(
                "store assistant message", self.store.complete_exchange, assistant,
            )
        except PersistenceError:
            logger.error(
                "Exchange %s: assistant reply (%d chars) was shown to the client "
                "but could not be saved to conversation %s",
                self.record.id, len(text), req.conversation_id,
            )
            raise

        self.assistant_message = assistant
        self._transition(RelayState.COMPLETED, message_id=assistant.id, chars=len(text))
        self._wire_log("outbound", "assistant", text)

        if not self.cancelled:
            await self._send_quietly(
                transport,
                format_event({"id": assistant.id, "content": text, "done": True}),
            )
            await self._send_quietly(transport, DONE_EVENT)

    # ─ Non-streaming ──────────────────────────────────────────────────────

    async def complete(self) -> Message:
        """Whole exchange without a live client. Raises the exchange's error."""
        await self.begin()
        result = await self.relay(NullTransport())
        if result.error is not None:
            raise result.error
        return result.assistant_message


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class RelayService:
    """Long-lived collaborators; hands out one RelaySession per exchange."""

    def __init__(
        self,
        store,
        assembler: PromptAssembler,
        backend,
        default_model: str = "",
        stream_upstream: bool = True,
        upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT,
        single_flight: bool = True,
        wire=None,
    ):
        self.store = store
        self.assembler = assembler
        self.backend = backend
        self.default_model = default_model
        self.stream_upstream = stream_upstream
        self.upstream_timeout = upstream_timeout
        self.guard = SingleFlight() if single_flight else None
        self.wire = wire

    @classmethod
    def from_config(cls, cfg: dict, store, backend, wire=None) -> "RelayService":
        relay_cfg = cfg.get("relay", {})
        return cls(
            store=store,
            assembler=PromptAssembler.from_config(store, cfg),
            backend=backend,
            default_model=cfg.get("backend", {}).get("default_model", ""),
            stream_upstream=cfg.get("backend", {}).get("stream", True),
            upstream_timeout=float(relay_cfg.get("upstream_timeout", DEFAULT_UPSTREAM_TIMEOUT)),
            single_flight=relay_cfg.get("single_flight", True),
            wire=wire,
        )

    def session(self, caller: Caller, request: ExchangeRequest, stream: bool = True) -> RelaySession:
        overrides = get_runtime_overrides()
        return RelaySession(
            caller=caller,
            request=request,
            store=self.store,
            assembler=self.assembler,
            backend=self.backend,
            model=resolve_model(caller.tier, overrides.force_model, self.default_model),
            stream=stream and self.stream_upstream,
            upstream_timeout=self.upstream_timeout,
            history_limit=overrides.history_limit,
            guard=self.guard,
            wire=self.wire,
        )
