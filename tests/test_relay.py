"""
Tests for the relay session state machine.

Upstream is either a scripted DeltaSource or the real CompletionBackend over
httpx.MockTransport; the transcript store is a real SQLite file per test.
Run with: pytest tests/test_relay.py
"""

import asyncio
import json
import logging
import sqlite3
from unittest.mock import MagicMock, patch

import httpx
import pytest

from heartline import config as cfg_mod
from heartline.backends.base import DeltaSource, StreamDelta, END
from heartline.backends.openai_compat import CompletionBackend
from heartline.config import RuntimeOverrides
from heartline.errors import (
    ConflictError,
    EmptyCompletionError,
    NotFoundError,
    PersistenceError,
    UpstreamError,
    ValidationError,
)
from heartline.prompt import PromptAssembler
from heartline.relay import (
    Caller,
    ClientDisconnected,
    ClientTransport,
    ExchangeRequest,
    QueueTransport,
    RelayService,
    RelaySession,
    RelayState,
    SingleFlight,
)
from heartline.sse import DONE, parse_data_line
from heartline.storage.models import Message
from heartline.storage.sqlite_store import SQLiteStore


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class ScriptedSource(DeltaSource):
    """Yields scripted deltas; can fail on open, stall, or fail mid-stream."""

    def __init__(self, deltas=(), open_error=None, open_delay=0.0, stall_after=None, fail_with=None):
        super().__init__()
        self.deltas = list(deltas)
        self.open_error = open_error
        self.open_delay = open_delay
        self.stall_after = stall_after
        self.fail_with = fail_with
        self.opened = False
        self.released = False

    async def open(self):
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error:
            raise self.open_error
        self.opened = True

    async def _deltas(self):
        for i, text in enumerate(self.deltas):
            if self.stall_after is not None and i >= self.stall_after:
                await asyncio.sleep(10)
            yield StreamDelta(text)
        if self.fail_with:
            raise self.fail_with
        yield END

    async def _release(self):
        self.released = True


class ScriptedBackend:
    def __init__(self, source: DeltaSource):
        self.source = source
        self.calls = []

    def open_source(self, turns, model, stream=True):
        self.calls.append({"turns": turns, "model": model, "stream": stream})
        return self.source


class RecordingTransport(ClientTransport):
    """Keeps every event; optionally 'disconnects' after N accepted events."""

    def __init__(self, disconnect_after=None):
        self.events = []
        self.disconnect_after = disconnect_after
        self.finished = False

    async def send(self, event):
        if self.disconnect_after is not None and len(self.events) >= self.disconnect_after:
            raise ClientDisconnected()
        self.events.append(event)

    async def finish(self):
        self.finished = True

    @property
    def payloads(self):
        return [parse_data_line(e.strip()) for e in self.events]

    @property
    def texts(self):
        return [p["content"] for p in self.payloads if isinstance(p, dict) and "content" in p and not p.get("done")]


def _sse(*chunks):
    body = "".join(
        "data: " + json.dumps({"choices": [{"delta": {"content": c}}]}) + "\n\n" for c in chunks
    )
    return (body + "data: [DONE]\n\n").encode()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store(tmp_path):
    return SQLiteStore(str(tmp_path / "relay.db"))


@pytest.fixture
def conv(store):
    return store.create_conversation("u1", "c1")


@pytest.fixture
def caller():
    return Caller(user_id="u1", tier="free")


def _session(store, conv, backend, content="Hi", **kwargs) -> RelaySession:
    req = ExchangeRequest(conversation_id=conv.id, companion_id=conv.companion_id, content=content)
    return RelaySession(
        caller=kwargs.pop("caller", Caller("u1")),
        request=req,
        store=store,
        assembler=PromptAssembler(store, system_prompt="sys"),
        backend=backend,
        model="mixtral-8x7b-32768",
        **kwargs,
    )


# ---------------------------------------------------------------------------
# ExchangeRequest
# ---------------------------------------------------------------------------

def test_exchange_request_from_body():
    req = ExchangeRequest.from_body({"content": "Hi", "conversationId": "c", "companionId": "p"})
    assert req == ExchangeRequest(conversation_id="c", companion_id="p", content="Hi")


@pytest.mark.parametrize("body,field", [
    ({"content": "", "conversationId": "c", "companionId": "p"}, "content"),
    ({"content": "   \n", "conversationId": "c", "companionId": "p"}, "content"),
    ({"conversationId": "c", "companionId": "p"}, "content"),
    ({"content": "Hi", "companionId": "p"}, "conversationId"),
    ({"content": "Hi", "conversationId": "c"}, "companionId"),
    ({"content": 5, "conversationId": "c", "companionId": "p"}, "content"),
])
def test_exchange_request_validation(body, field):
    with pytest.raises(ValidationError) as exc:
        ExchangeRequest.from_body(body)
    assert field in exc.value.message
    assert exc.value.status_code == 400


def test_exchange_request_rejects_non_object():
    with pytest.raises(ValidationError):
        ExchangeRequest.from_body(["content"])


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fresh_conversation_streams_and_persists(store, conv):
    """Hi -> Hel, lo, ! : client sees each delta, transcript gets both turns."""
    source = ScriptedSource(["Hel", "lo", "!"])
    backend = ScriptedBackend(source)
    session = _session(store, conv, backend)
    transport = RecordingTransport()

    await session.begin()
    assert session.state is RelayState.STREAMING
    result = await session.relay(transport)

    assert result.ok
    assert result.deltas_forwarded == 3
    assert transport.texts == ["Hel", "lo", "!"]
    final = transport.payloads[-2]
    assert final["done"] is True
    assert final["content"] == "Hello!"
    assert final["id"] == result.assistant_message.id
    assert transport.payloads[-1] is DONE
    assert transport.finished

    messages = store.get_messages(conv.id)
    assert [(m.role, m.content) for m in messages] == [("user", "Hi"), ("assistant", "Hello!")]
    assert messages[1].model == "mixtral-8x7b-32768"
    assert store.get_updated_at(conv.id) == result.updated_at
    assert result.updated_at >= conv.updated_at

    assert backend.calls[0]["turns"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "Hi"},
    ]
    assert source.released


@pytest.mark.asyncio
async def test_state_timeline(store, conv):
    session = _session(store, conv, ScriptedBackend(ScriptedSource(["ok"])))
    await session.begin()
    result = await session.relay(RecordingTransport())

    states = [e["state"] for e in result.record["events"]]
    assert states == [
        "Idle", "UserTurnPersisted", "UpstreamRequested", "Streaming", "Finalizing", "Completed",
    ]
    assert RelayState.COMPLETED.terminal
    assert not RelayState.STREAMING.terminal


@pytest.mark.asyncio
async def test_history_included_once(store, conv):
    """Earlier turns go upstream in order, the new turn only at the end."""
    for role, content in [("user", "Hi"), ("assistant", "Hello!")]:
        store.append_message(Message(
            conversation_id=conv.id, user_id="u1", companion_id="c1", role=role, content=content,
        ))
    backend = ScriptedBackend(ScriptedSource(["Good, you?"]))
    session = _session(store, conv, backend, content="How are you?")

    await session.begin()
    await session.relay(RecordingTransport())

    assert [t["content"] for t in backend.calls[0]["turns"]] == ["sys", "Hi", "Hello!", "How are you?"]
    assert [m.content for m in store.get_messages(conv.id)] == ["Hi", "Hello!", "How are you?", "Good, you?"]


@pytest.mark.asyncio
async def test_empty_deltas_are_not_forwarded(store, conv):
    session = _session(store, conv, ScriptedBackend(ScriptedSource(["", "a", "", "b"])))
    transport = RecordingTransport()
    await session.begin()
    result = await session.relay(transport)

    assert transport.texts == ["a", "b"]
    assert result.assistant_message.content == "ab"


@pytest.mark.asyncio
async def test_wire_log_records_persisted_turns(store, conv):
    wire = MagicMock()
    session = _session(store, conv, ScriptedBackend(ScriptedSource(["yo"])), wire=wire)
    await session.begin()
    await session.relay(RecordingTransport())

    directions = [c.kwargs["direction"] for c in wire.log.call_args_list]
    assert directions == ["inbound", "outbound"]
    assert wire.log.call_args_list[1].kwargs["content"] == "yo"


# ---------------------------------------------------------------------------
# Setup failures (raised before the stream starts)
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upstream_error_keeps_user_turn(store, conv):
    """503 on open: user turn stays, no assistant turn, nothing streamed."""
    source = ScriptedSource(open_error=UpstreamError("groq returned HTTP 503", status=503))
    session = _session(store, conv, ScriptedBackend(source))

    with pytest.raises(UpstreamError):
        await session.begin()

    assert session.state is RelayState.FAILED
    assert [m.role for m in store.get_messages(conv.id)] == ["user"]
    assert store.get_updated_at(conv.id) == conv.updated_at
    assert source.closed


@pytest.mark.asyncio
async def test_foreign_conversation_not_found(store, conv):
    backend = ScriptedBackend(ScriptedSource(["x"]))
    session = _session(store, conv, backend, caller=Caller("intruder"))

    with pytest.raises(NotFoundError):
        await session.begin()

    assert store.get_messages(conv.id) == []
    assert backend.calls == []


@pytest.mark.asyncio
async def test_companion_mismatch_not_found(store, conv):
    backend = ScriptedBackend(ScriptedSource(["x"]))
    req = ExchangeRequest(conversation_id=conv.id, companion_id="someone-else", content="Hi")
    session = RelaySession(
        Caller("u1"), req, store, PromptAssembler(store), backend, model="m",
    )
    with pytest.raises(NotFoundError):
        await session.begin()
    assert store.get_messages(conv.id) == []


@pytest.mark.asyncio
async def test_user_turn_write_failure_stops_before_upstream(store, conv):
    backend = ScriptedBackend(ScriptedSource(["x"]))
    session = _session(store, conv, backend)

    with patch.object(store, "append_message", side_effect=sqlite3.OperationalError("database is locked")):
        with pytest.raises(PersistenceError) as exc:
            await session.begin()

    assert "database is locked" in exc.value.message
    assert backend.calls == []
    assert session.state is RelayState.FAILED


@pytest.mark.asyncio
async def test_open_timeout(store, conv):
    source = ScriptedSource(["x"], open_delay=5)
    session = _session(store, conv, ScriptedBackend(source), upstream_timeout=0.05)

    with pytest.raises(UpstreamError) as exc:
        await session.begin()
    assert "ceiling" in exc.value.message


@pytest.mark.asyncio
async def test_run_reports_setup_failure_in_band(store, conv):
    transport = RecordingTransport()
    session = _session(store, conv, ScriptedBackend(ScriptedSource(["x"])), caller=Caller("intruder"))

    result = await session.run(transport)

    assert not result.ok
    assert isinstance(result.error, NotFoundError)
    assert transport.payloads[0]["error"]["kind"] == "NotFoundError"
    assert transport.payloads[-1] is DONE
    assert transport.finished


# ---------------------------------------------------------------------------
# Stream-time failures (reported in-band)
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_empty_completion(store, conv):
    session = _session(store, conv, ScriptedBackend(ScriptedSource([])))
    transport = RecordingTransport()
    await session.begin()
    result = await session.relay(transport)

    assert result.state is RelayState.FAILED
    assert isinstance(result.error, EmptyCompletionError)
    assert transport.payloads[0]["error"]["kind"] == "EmptyCompletionError"
    assert transport.payloads[-1] is DONE
    assert [m.role for m in store.get_messages(conv.id)] == ["user"]


@pytest.mark.asyncio
async def test_mid_stream_timeout_persists_nothing(store, conv):
    source = ScriptedSource(["Hel", "lo"], stall_after=1)
    session = _session(store, conv, ScriptedBackend(source), upstream_timeout=0.2)
    transport = RecordingTransport()

    await session.begin()
    result = await session.relay(transport)

    assert isinstance(result.error, UpstreamError)
    assert transport.texts == ["Hel"]
    assert transport.payloads[-2]["error"]["kind"] == "UpstreamError"
    assert transport.payloads[-1] is DONE
    assert [m.role for m in store.get_messages(conv.id)] == ["user"]
    assert source.closed


@pytest.mark.asyncio
async def test_mid_stream_upstream_error(store, conv):
    source = ScriptedSource(["Hel"], fail_with=UpstreamError("groq unreachable: reset"))
    session = _session(store, conv, ScriptedBackend(source))
    transport = RecordingTransport()

    await session.begin()
    result = await session.relay(transport)

    assert result.state is RelayState.FAILED
    assert transport.payloads[-2]["error"]["message"] == "groq unreachable: reset"
    assert [m.role for m in store.get_messages(conv.id)] == ["user"]


@pytest.mark.asyncio
async def test_assistant_write_failure_is_reported(store, conv, caplog):
    session = _session(store, conv, ScriptedBackend(ScriptedSource(["Hel", "lo"])))
    transport = RecordingTransport()

    await session.begin()
    with patch.object(store, "complete_exchange", side_effect=sqlite3.OperationalError("disk I/O error")):
        with caplog.at_level(logging.ERROR, logger="heartline.relay"):
            result = await session.relay(transport)

    assert isinstance(result.error, PersistenceError)
    assert transport.texts == ["Hel", "lo"]
    assert transport.payloads[-2]["error"]["kind"] == "PersistenceError"
    assert any("could not be saved" in r.getMessage() for r in caplog.records)
    assert [m.role for m in store.get_messages(conv.id)] == ["user"]


# ---------------------------------------------------------------------------
# Client disconnect
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_client_abort_persists_forwarded_text(store, conv):
    """Client leaves after Hel, lo: upstream is closed and 'Hello' is saved."""
    source = ScriptedSource(["Hel", "lo", " world", "!"])
    session = _session(store, conv, ScriptedBackend(source))
    transport = RecordingTransport(disconnect_after=2)

    await session.begin()
    result = await session.relay(transport)

    assert result.ok
    assert result.cancelled
    assert result.deltas_forwarded == 2
    assert result.assistant_message.content == "Hello"
    assert source.closed and source.released
    assert [m.content for m in store.get_messages(conv.id)] == ["Hi", "Hello"]
    assert len(transport.events) == 2


@pytest.mark.asyncio
async def test_client_abort_before_any_delta(store, conv):
    session = _session(store, conv, ScriptedBackend(ScriptedSource(["Hel"])))
    transport = RecordingTransport(disconnect_after=0)

    await session.begin()
    result = await session.relay(transport)

    assert result.cancelled
    assert isinstance(result.error, EmptyCompletionError)
    assert [m.role for m in store.get_messages(conv.id)] == ["user"]


# ---------------------------------------------------------------------------
# Real backend over MockTransport
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_sse_backend_end_to_end(store, conv):
    def handler(request):
        return httpx.Response(200, content=_sse("Hel", "lo", "!"))

    backend = CompletionBackend(name="groq", url="http://fake/v1", transport=httpx.MockTransport(handler))
    session = _session(store, conv, backend)
    transport = RecordingTransport()

    result = await session.run(transport)

    assert result.ok
    assert transport.texts == ["Hel", "lo", "!"]
    assert store.get_messages(conv.id)[-1].content == "Hello!"


@pytest.mark.asyncio
async def test_sse_backend_503(store, conv):
    def handler(request):
        return httpx.Response(503, text="over capacity")

    backend = CompletionBackend(name="groq", url="http://fake/v1", transport=httpx.MockTransport(handler))
    session = _session(store, conv, backend)

    with pytest.raises(UpstreamError) as exc:
        await session.begin()
    assert exc.value.status == 503
    assert [m.role for m in store.get_messages(conv.id)] == ["user"]


@pytest.mark.asyncio
async def test_complete_single_shot(store, conv):
    def handler(request):
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(200, json={"choices": [{"message": {"content": "Hello!"}}]})

    backend = CompletionBackend(name="groq", url="http://fake/v1", transport=httpx.MockTransport(handler))
    session = _session(store, conv, backend, stream=False)

    message = await session.complete()
    assert message.content == "Hello!"
    assert message.role == "assistant"
    assert [m.content for m in store.get_messages(conv.id)] == ["Hi", "Hello!"]


@pytest.mark.asyncio
async def test_complete_raises_stream_error(store, conv):
    session = _session(store, conv, ScriptedBackend(ScriptedSource([])), stream=False)
    with pytest.raises(EmptyCompletionError):
        await session.complete()


# ---------------------------------------------------------------------------
# Single-flight
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_second_submission_rejected_while_in_flight(store, conv):
    guard = SingleFlight()
    first = _session(store, conv, ScriptedBackend(ScriptedSource(["a"])), guard=guard)
    await first.begin()
    assert conv.id in guard

    second = _session(store, conv, ScriptedBackend(ScriptedSource(["b"])), content="again", guard=guard)
    with pytest.raises(ConflictError) as exc:
        await second.begin()
    assert exc.value.status_code == 409
    assert [m.content for m in store.get_messages(conv.id)] == ["Hi"]

    await first.relay(RecordingTransport())
    assert conv.id not in guard
    assert len(guard) == 0

    third = _session(store, conv, ScriptedBackend(ScriptedSource(["c"])), content="third", guard=guard)
    await third.begin()
    result = await third.relay(RecordingTransport())
    assert result.ok


@pytest.mark.asyncio
async def test_guard_released_on_setup_failure(store, conv):
    guard = SingleFlight()
    source = ScriptedSource(open_error=UpstreamError("down"))
    session = _session(store, conv, ScriptedBackend(source), guard=guard)
    with pytest.raises(UpstreamError):
        await session.begin()
    assert len(guard) == 0


@pytest.mark.asyncio
async def test_foreign_caller_gets_not_found_while_owner_in_flight(store, conv):
    guard = SingleFlight()
    assert guard.acquire(conv.id)

    source = ScriptedSource(["x"])
    intruder = _session(store, conv, ScriptedBackend(source), caller=Caller("u2"), guard=guard)
    with pytest.raises(NotFoundError) as exc:
        await intruder.begin()
    assert exc.value.status_code == 404
    assert intruder.state is RelayState.FAILED
    # the owner's exchange still holds the guard
    assert conv.id in guard
    assert store.get_messages(conv.id) == []
    assert not source.opened


# ---------------------------------------------------------------------------
# QueueTransport
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_queue_transport_drains_until_finish():
    t = QueueTransport()
    await t.send("a")
    await t.send("b")
    await t.finish()
    assert [e async for e in t.stream()] == ["a", "b"]
    assert t.closed


@pytest.mark.asyncio
async def test_queue_transport_send_after_close():
    t = QueueTransport()
    t.close()
    with pytest.raises(ClientDisconnected):
        await t.send("x")


@pytest.mark.asyncio
async def test_queue_transport_consumer_gone():
    """Tearing down the response generator makes the next send fail."""
    t = QueueTransport()
    await t.send("first")
    gen = t.stream()
    assert await gen.__anext__() == "first"
    await gen.aclose()
    with pytest.raises(ClientDisconnected):
        await t.send("second")


# ---------------------------------------------------------------------------
# RelayService
# ---------------------------------------------------------------------------

def test_service_from_config(store):
    cfg = {
        "backend": {"default_model": "gemma-7b-it", "stream": False},
        "relay": {"history_limit": 5, "upstream_timeout": 30, "single_flight": False},
    }
    service = RelayService.from_config(cfg, store, backend=MagicMock())
    assert service.assembler.history_limit == 5
    assert service.upstream_timeout == 30.0
    assert service.guard is None
    assert service.stream_upstream is False


def test_service_session_model_by_tier(store):
    service = RelayService(store, PromptAssembler(store), backend=MagicMock())
    req = ExchangeRequest("c", "p", "Hi")
    with patch("heartline.relay.get_runtime_overrides", return_value=RuntimeOverrides()):
        assert service.session(Caller("u", "premium"), req).model == "llama-3.1-70b-versatile"
        assert service.session(Caller("u", "free"), req).model == "mixtral-8x7b-32768"


def test_service_session_runtime_overrides(store):
    service = RelayService(store, PromptAssembler(store), backend=MagicMock())
    req = ExchangeRequest("c", "p", "Hi")
    overrides = RuntimeOverrides(force_model="gemma-7b-it", history_limit=3)
    with patch("heartline.relay.get_runtime_overrides", return_value=overrides):
        session = service.session(Caller("u", "premium"), req)
    assert session.model == "gemma-7b-it"
    assert session.history_limit == 3
    assert session.guard is service.guard


def test_service_session_ignores_bad_runtime_values(store, tmp_path, monkeypatch, caplog):
    """A typo in runtime_config.yaml falls back to defaults instead of failing the exchange."""
    rt_path = tmp_path / "runtime_config.yaml"
    rt_path.write_text("runtime:\n  history_limit: twenty\n  force_model: 5\n")
    monkeypatch.setattr(cfg_mod, "_RUNTIME_CONFIG_PATH", rt_path)
    monkeypatch.setattr(cfg_mod, "_runtime_config", {})
    monkeypatch.setattr(cfg_mod, "_runtime_mtime", 0.0)
    monkeypatch.setattr(cfg_mod, "_overrides", None)
    monkeypatch.setattr(cfg_mod, "_overrides_source", None)

    service = RelayService(store, PromptAssembler(store), backend=MagicMock())
    with caplog.at_level(logging.WARNING, logger="heartline.config"):
        session = service.session(Caller("u", "premium"), ExchangeRequest("c", "p", "Hi"))

    assert session.model == "llama-3.1-70b-versatile"
    assert session.history_limit is None
    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any("history_limit" in m for m in warnings)
    assert any("force_model" in m for m in warnings)
