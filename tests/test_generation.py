import httpx
import orjson
import pytest

from errors import GenerationError
from generation import OllamaGateway, OpenAICompatGateway, TokenMeter


def _ndjson(*objs) -> bytes:
    return b"".join(orjson.dumps(o) + b"\n" for o in objs)


def _ollama_handler(log, chat_body=None, chat_status=200, warm_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        log.append(request.url.path)
        if request.url.path == "/api/generate":
            return httpx.Response(warm_status, json={"response": "a", "done": True})
        if request.url.path == "/api/chat":
            body = chat_body if chat_body is not None else _ndjson(
                {"message": {"role": "assistant", "content": "Hel"}, "done": False},
                {"message": {"role": "assistant", "content": "lo"}, "done": False},
                {"message": {"role": "assistant", "content": ""}, "done": True},
            )
            return httpx.Response(chat_status, content=body)
        return httpx.Response(404)
    return handler


@pytest.mark.asyncio
async def test_ollama_streams_and_assembles_text():
    log = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_ollama_handler(log))) as client:
        gw = OllamaGateway(client, "http://ollama.test", "granite4:micro")
        assert gw.is_ready() is False
        events = []
        text = await gw.generate([{"role": "user", "content": "hi"}], events.append)
    assert text == "Hello"
    assert gw.is_ready() is True
    assert [e.status for e in events] == ["loading", "ready", "generating", "generating"]
    generating = [e for e in events if e.status == "generating"]
    assert [e.num_tokens for e in generating] == [1, 2]
    assert [e.delta for e in generating] == ["Hel", "lo"]
    assert log == ["/api/generate", "/api/chat"]


@pytest.mark.asyncio
async def test_ollama_initializes_only_once():
    log = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_ollama_handler(log))) as client:
        gw = OllamaGateway(client, "http://ollama.test", "m")
        first, second = [], []
        await gw.initialize(first.append)
        await gw.initialize(second.append)
        await gw.generate([{"role": "user", "content": "hi"}])
    assert log.count("/api/generate") == 1
    assert [e.status for e in first] == ["loading", "ready"]
    assert second == []


@pytest.mark.asyncio
async def test_set_model_drops_readiness():
    log = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_ollama_handler(log))) as client:
        gw = OllamaGateway(client, "http://ollama.test", "m1")
        await gw.initialize()
        await gw.set_model("m1")
        assert gw.is_ready() is True
        await gw.set_model("m2")
        assert gw.model_id == "m2"
        assert gw.is_ready() is False


@pytest.mark.asyncio
async def test_ollama_http_error_raises():
    log = []
    handler = _ollama_handler(log, chat_body=b'{"error": "model not found"}', chat_status=404)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        gw = OllamaGateway(client, "http://ollama.test", "m")
        with pytest.raises(GenerationError, match="model not found"):
            await gw.generate([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_ollama_stream_error_line_raises():
    log = []
    body = _ndjson({"message": {"content": "par"}}, {"error": "out of memory"})
    async with httpx.AsyncClient(transport=httpx.MockTransport(_ollama_handler(log, chat_body=body))) as client:
        gw = OllamaGateway(client, "http://ollama.test", "m")
        with pytest.raises(GenerationError, match="out of memory"):
            await gw.generate([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_warm_up_failure_keeps_gateway_unready():
    log = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_ollama_handler(log, warm_status=500))) as client:
        gw = OllamaGateway(client, "http://ollama.test", "m")
        with pytest.raises(GenerationError):
            await gw.initialize()
        assert gw.is_ready() is False


@pytest.mark.asyncio
async def test_request_error_becomes_generation_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        gw = OllamaGateway(client, "http://ollama.test", "m")
        with pytest.raises(GenerationError, match="Backend request failed"):
            await gw.generate([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_openai_compat_gateway():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = orjson.loads(request.content)
        seen.append((request.url.path, body["max_tokens"], request.headers["authorization"]))
        return httpx.Response(200, json={
            "choices": [{"message": {"role": "assistant", "content": "Hi from LM Studio"}}],
            "usage": {"completion_tokens": 4},
        })

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        gw = OpenAICompatGateway(client, "http://lmstudio.test/v1", "ibm/granite", max_new_tokens=256)
        events = []
        text = await gw.generate([{"role": "user", "content": "hi"}], events.append)
    assert text == "Hi from LM Studio"
    assert seen[0] == ("/v1/chat/completions", 1, "Bearer lm-studio")
    assert seen[1][1] == 256
    assert events[-1].num_tokens == 4


@pytest.mark.asyncio
async def test_openai_compat_missing_choices_raises():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"choices": []}))) as client:
        gw = OpenAICompatGateway(client, "http://lmstudio.test/v1", "m")
        with pytest.raises(GenerationError):
            await gw.generate([{"role": "user", "content": "hi"}])


def test_token_meter_is_monotonic_with_throughput():
    ticks = iter([10.0, 10.5, 11.0])
    meter = TokenMeter(clock=lambda: next(ticks))
    meter.tick()
    assert meter.num_tokens == 1 and meter.tps is None
    meter.tick()
    meter.tick()
    assert meter.num_tokens == 3
    assert meter.tps == pytest.approx(3.0)
