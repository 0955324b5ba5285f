import asyncio

import orjson
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import server
from errors import GenerationError
from generation import ProgressEvent
from tools import LocalToolServer


class ScriptedGateway:
    def __init__(self, reply="", error=None):
        self.model_id = "scripted"
        self.reply = reply
        self.error = error
        self.ready = False

    async def initialize(self, on_progress=None):
        self.ready = True

    def is_ready(self):
        return self.ready

    async def set_model(self, model_id):
        if model_id != self.model_id:
            self.model_id = model_id
            self.ready = False

    async def generate(self, messages, on_progress=None):
        if on_progress is not None:
            on_progress(ProgressEvent(self.reply, 3, 12.5))
        if self.error:
            raise self.error
        return self.reply


@pytest.fixture
def make_client():
    def _make(gateway, transport=None):
        server.install_engine(server.app, transport or LocalToolServer(), gateway)
        return TestClient(server.app)
    return _make


def _sse_events(body: bytes):
    return [orjson.loads(line[len(b"data: "):]) for line in body.split(b"\n\n") if line.startswith(b"data: ")]


def test_chat_conversational(make_client):
    client = make_client(ScriptedGateway("assistant\nHello!"))
    r = client.post("/api/chat", json={"message": "hello"})
    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    assert data["response"] == "Hello!"
    assert data["tool_call_seconds"] is None
    assert data["timing"].startswith("Total time: ")


def test_chat_tool_call_with_bundled_tools(make_client):
    client = make_client(ScriptedGateway('{"tool_name": "eval_expr", "tool_arguments": {"expr": "6 * 7"}}'))
    data = client.post("/api/chat", json={"message": "what is 6 times 7"}).json()
    assert data["response"] == "Response from 'eval_expr':\n42"
    assert data["tool_name"] == "eval_expr"
    assert data["tool_call_seconds"] is not None


def test_chat_failure_is_generic_error(make_client):
    client = make_client(ScriptedGateway(error=GenerationError("boom")))
    r = client.post("/api/chat", json={"message": "hello"})
    assert r.status_code == 502
    assert r.json() == {"ok": False, "error": "Error processing message."}


def test_unknown_tool_dispatch_is_turn_error(make_client):
    client = make_client(ScriptedGateway('{"tool_name": "made_up"}'))
    r = client.post("/api/chat", json={"message": "x"})
    assert r.status_code == 502


def test_chat_requires_message(make_client):
    client = make_client(ScriptedGateway("hi"))
    assert client.post("/api/chat", json={"message": "  "}).status_code == 422


def test_stream_emits_progress_then_done(make_client):
    client = make_client(ScriptedGateway("Streaming answer"))
    r = client.post("/api/chat/stream", json={"message": "hello"})
    events = _sse_events(r.content)
    assert [e["type"] for e in events] == ["progress", "done"]
    assert events[0]["num_tokens"] == 3
    assert events[1]["response"] == "Streaming answer"


def test_stream_reports_error_event(make_client):
    client = make_client(ScriptedGateway(error=GenerationError("boom")))
    events = _sse_events(client.post("/api/chat/stream", json={"message": "hello"}).content)
    assert events[-1] == {"type": "error", "message": "Error processing message."}


def test_tools_endpoint_lists_catalog(make_client):
    client = make_client(ScriptedGateway())
    data = client.get("/api/tools").json()
    assert data["ok"] is True
    assert data["summary"].startswith("Found 6 tools:")
    assert data["tools"][0]["name"] == "eval_expr"


def test_model_set_and_initialize(make_client):
    client = make_client(ScriptedGateway())
    assert client.get("/api/health").json()["model_ready"] is False
    assert client.post("/api/initialize").json() == {"ok": True, "model": "scripted"}
    assert client.get("/api/health").json()["model_ready"] is True
    data = client.post("/api/models/set", json={"model": "other"}).json()
    assert data == {"ok": True, "model": "other", "model_ready": False}


class HeldLock:
    def locked(self):
        return True


class BlockingGateway(ScriptedGateway):
    """First generate() call hangs until cancelled; later calls answer right away."""

    def __init__(self, reply="second answer"):
        super().__init__(reply)
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.cancelled = 0

    async def generate(self, messages, on_progress=None):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if on_progress is not None:
                on_progress(ProgressEvent("par", 1, None))
            if self.calls == 1:
                await asyncio.Event().wait()
            return self.reply
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.active -= 1


def test_busy_gate_rejects_overlapping_requests(make_client):
    client = make_client(ScriptedGateway("hi"))
    server.app.state.turn_lock = HeldLock()
    assert client.post("/api/chat", json={"message": "hello"}).status_code == 409
    assert client.post("/api/chat/stream", json={"message": "hello"}).status_code == 409
    assert client.post("/api/models/set", json={"model": "other"}).status_code == 409
    assert client.get("/api/health").json()["busy"] is True


def test_unexpected_failure_is_generic_error(make_client):
    client = make_client(ScriptedGateway(error=RuntimeError("kaboom")))
    r = client.post("/api/chat", json={"message": "hello"})
    assert r.status_code == 502
    assert r.json() == {"ok": False, "error": "Error processing message."}
    events = _sse_events(client.post("/api/chat/stream", json={"message": "hello"}).content)
    assert events[-1] == {"type": "error", "message": "Error processing message."}
    assert not server.app.state.turn_lock.locked()


def test_stream_progress_carries_delta(make_client):
    client = make_client(ScriptedGateway("Streaming answer"))
    events = _sse_events(client.post("/api/chat/stream", json={"message": "hello"}).content)
    assert events[0] == {"type": "progress", "status": "generating", "delta": "Streaming answer", "num_tokens": 3, "tps": 12.5}


@pytest.mark.asyncio
async def test_stream_holds_lock_before_body_is_read():
    server.install_engine(server.app, LocalToolServer(), ScriptedGateway("hi"))
    response = await server.chat_stream({"message": "first"})
    assert server.app.state.turn_lock.locked()
    with pytest.raises(HTTPException) as excinfo:
        await server.chat_stream({"message": "second"})
    assert excinfo.value.status_code == 409
    events = _sse_events(b"".join([chunk async for chunk in response.body_iterator]))
    assert events[-1]["response"] == "hi"
    assert not server.app.state.turn_lock.locked()


@pytest.mark.asyncio
async def test_stream_disconnect_cancels_turn_before_next_one():
    gw = BlockingGateway()
    server.install_engine(server.app, LocalToolServer(), gw)
    lock = server.app.state.turn_lock

    response = await server.chat_stream({"message": "first"})
    first = orjson.loads((await response.body_iterator.__anext__())[len(b"data: "):])
    assert first["type"] == "progress"
    assert gw.active == 1 and lock.locked()

    # Client disconnects mid-turn
    await response.body_iterator.aclose()
    assert gw.cancelled == 1
    assert gw.active == 0
    assert not lock.locked()

    second = await server.chat_stream({"message": "second"})
    events = _sse_events(b"".join([chunk async for chunk in second.body_iterator]))
    assert events[-1]["type"] == "done"
    assert events[-1]["response"] == "second answer"
    assert gw.max_active == 1
    assert not lock.locked()
