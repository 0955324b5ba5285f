# generation.py
"""
Generation gateways: the text-generation backends the engine treats as a black box.

Each gateway owns its model as an explicit, lazily initialized resource:
initialize(on_progress) loads and warms the model once (guarded by a lock), is_ready()
reports whether that happened, set_model() switches ids and drops readiness.
generate() initializes on demand, may stream ProgressEvent notifications and
returns the fully assembled text. Failures raise GenerationError; nothing here
retries.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
import orjson

from errors import GenerationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """delta is only the text generated since the previous event."""
    delta: str
    num_tokens: int
    tps: Optional[float] = None
    status: str = "generating"  # loading | ready | generating

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "delta": self.delta, "num_tokens": self.num_tokens, "tps": self.tps}


ProgressSink = Callable[[ProgressEvent], None]


class GenerationGateway(Protocol):
    model_id: str

    async def initialize(self, on_progress: Optional[ProgressSink] = None) -> None: ...

    def is_ready(self) -> bool: ...

    async def set_model(self, model_id: str) -> None: ...

    async def generate(self, messages: List[Dict[str, str]], on_progress: Optional[ProgressSink] = None) -> str: ...


class TokenMeter:
    """Counts streamed tokens and estimates throughput from the first token on."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self._start: Optional[float] = None
        self.num_tokens = 0
        self.tps: Optional[float] = None

    def tick(self, count: int = 1) -> None:
        now = self._clock()
        if self._start is None:
            self._start = now
        self.num_tokens += count
        elapsed = now - self._start
        if self.num_tokens > 1 and elapsed > 0:
            self.tps = self.num_tokens / elapsed


def _error_detail(status_code: int, raw: bytes) -> str:
    text = raw.decode("utf-8", "ignore").strip()
    if not text:
        return f"HTTP {status_code} from model host"
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError:
        return f"HTTP {status_code}: {text}"
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("message") or payload.get("detail")
        if isinstance(detail, dict):
            detail = detail.get("message") or str(detail)
        if detail:
            return f"HTTP {status_code}: {detail}"
    return f"HTTP {status_code}: {text}"


class _ModelResource:
    def __init__(self, model_id: str):
        self.model_id = model_id
        self._ready = False
        self._init_lock = asyncio.Lock()

    def is_ready(self) -> bool:
        return self._ready

    async def set_model(self, model_id: str) -> None:
        if model_id == self.model_id:
            return
        async with self._init_lock:
            self.model_id = model_id
            self._ready = False
        logger.info("Switched model to %s; it will load on next use", model_id)

    async def initialize(self, on_progress: Optional[ProgressSink] = None) -> None:
        if self._ready:
            return
        async with self._init_lock:
            if self._ready:
                return
            logger.info("Loading model %s...", self.model_id)
            if on_progress is not None:
                on_progress(ProgressEvent("", 0, status="loading"))
            started = time.perf_counter()
            await self._warm_up()
            self._ready = True
            if on_progress is not None:
                on_progress(ProgressEvent("", 0, status="ready"))
            logger.info("Model %s loaded and warmed up in %.2fs", self.model_id, time.perf_counter() - started)

    async def _warm_up(self) -> None:
        raise NotImplementedError


class OllamaGateway(_ModelResource):
    """Streams /api/chat from a local Ollama host (NDJSON lines)."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        host: str,
        model_id: str,
        max_new_tokens: int = 1024,
        temperature: float = 0.7,
    ):
        super().__init__(model_id)
        self.client = client
        self.host = host.rstrip("/")
        self.max_new_tokens = max_new_tokens
        self.temperature = temperature

    async def _warm_up(self) -> None:
        req = {
            "model": self.model_id,
            "prompt": "a",
            "stream": False,
            "options": {"num_predict": 1},
        }
        try:
            r = await self.client.post(f"{self.host}/api/generate", json=req, timeout=None)
        except httpx.RequestError as e:
            raise GenerationError(f"Backend request failed: {e}") from e
        if r.status_code >= 400:
            raise GenerationError(_error_detail(r.status_code, r.content))

    async def generate(self, messages: List[Dict[str, str]], on_progress: Optional[ProgressSink] = None) -> str:
        await self.initialize(on_progress)
        req: Dict[str, Any] = {
            "model": self.model_id,
            "messages": messages,
            "stream": True,
            "options": {"temperature": self.temperature, "num_predict": self.max_new_tokens},
        }
        meter = TokenMeter()
        parts: List[str] = []
        try:
            async with self.client.stream("POST", f"{self.host}/api/chat", json=req, timeout=None) as resp:
                if resp.status_code >= 400:
                    raise GenerationError(_error_detail(resp.status_code, await resp.aread()))
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = orjson.loads(line)
                    except orjson.JSONDecodeError:
                        logger.debug("Skipping unparsable stream line: %r", line[:200])
                        continue
                    if not isinstance(data, dict):
                        continue
                    if data.get("error"):
                        raise GenerationError(str(data["error"]))
                    msg = data.get("message")
                    piece = msg.get("content") if isinstance(msg, dict) else None
                    if piece:
                        parts.append(piece)
                        meter.tick()
                        if on_progress is not None:
                            on_progress(ProgressEvent(piece, meter.num_tokens, meter.tps))
                    if data.get("done"):
                        break
        except httpx.RequestError as e:
            raise GenerationError(f"Backend request failed: {e}") from e
        return "".join(parts)


class OpenAICompatGateway(_ModelResource):
    """Non-streaming /chat/completions against an OpenAI-compatible local server (LM Studio)."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        model_id: str,
        api_key: str = "lm-studio",
        max_new_tokens: int = 1024,
        temperature: float = 0.7,
    ):
        super().__init__(model_id)
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_new_tokens = max_new_tokens
        self.temperature = temperature

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    async def _complete(self, messages: List[Dict[str, str]], max_tokens: int) -> Dict[str, Any]:
        req = {
            "model": self.model_id,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": max_tokens,
            "stream": False,
        }
        try:
            r = await self.client.post(f"{self.base_url}/chat/completions", json=req, headers=self._headers(), timeout=None)
        except httpx.RequestError as e:
            raise GenerationError(f"Backend request failed: {e}") from e
        if r.status_code >= 400:
            raise GenerationError(_error_detail(r.status_code, r.content))
        try:
            data = orjson.loads(r.content)
        except orjson.JSONDecodeError as e:
            raise GenerationError(f"Unparsable completion body: {e}") from e
        if not isinstance(data, dict):
            raise GenerationError("Unexpected completion body")
        return data

    async def _warm_up(self) -> None:
        await self._complete([{"role": "user", "content": "a"}], max_tokens=1)

    async def generate(self, messages: List[Dict[str, str]], on_progress: Optional[ProgressSink] = None) -> str:
        await self.initialize(on_progress)
        started = time.perf_counter()
        data = await self._complete(messages, self.max_new_tokens)
        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError(f"Completion without message content: {e}") from e
        if on_progress is not None:
            usage = data.get("usage") or {}
            num_tokens = int(usage.get("completion_tokens") or 0)
            elapsed = time.perf_counter() - started
            tps = num_tokens / elapsed if num_tokens and elapsed > 0 else None
            on_progress(ProgressEvent(text, num_tokens, tps))
        return text
