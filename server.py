# server.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import orjson
from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

import config
from catalog import ToolCatalog, describe_tools
from errors import OrchestratorError
from extractor import RoleMarkerCleanup
from generation import OllamaGateway, OpenAICompatGateway, ProgressEvent
from mcp_client import McpClient
from orchestrator import Orchestrator
from tools import LocalToolServer

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Error processing message."


def build_gateway(client: httpx.AsyncClient):
    if config.GENERATION_BACKEND == "openai":
        return OpenAICompatGateway(
            client,
            config.OPENAI_BASE_URL,
            config.MODEL,
            api_key=config.OPENAI_API_KEY,
            max_new_tokens=config.MAX_NEW_TOKENS,
            temperature=config.TEMPERATURE,
        )
    return OllamaGateway(
        client,
        config.OLLAMA_HOST,
        config.MODEL,
        max_new_tokens=config.MAX_NEW_TOKENS,
        temperature=config.TEMPERATURE,
    )


def build_transport(client: httpx.AsyncClient):
    if config.MCP_URL:
        return McpClient(client, config.MCP_URL, config.MCP_CLIENT_NAME, config.MCP_CLIENT_VERSION)
    return LocalToolServer()


def install_engine(target: FastAPI, transport, gateway) -> Orchestrator:
    engine = Orchestrator(
        transport,
        gateway,
        catalog=ToolCatalog(transport, cache=config.TOOL_CATALOG_CACHE),
        cleanup=RoleMarkerCleanup(config.ROLE_MARKER),
    )
    target.state.engine = engine
    target.state.turn_lock = asyncio.Lock()
    return engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    config.configure_logging()
    limits = httpx.Limits(max_connections=20, max_keepalive_connections=20)
    app.state.client = httpx.AsyncClient(http2=True, limits=limits)
    transport = build_transport(app.state.client)
    install_engine(app, transport, build_gateway(app.state.client))
    logger.info(
        "Engine ready: backend=%s model=%s tools=%s",
        config.GENERATION_BACKEND,
        config.MODEL,
        config.MCP_URL or "bundled",
    )
    yield
    # Shutdown
    if isinstance(transport, McpClient):
        await transport.disconnect()
    await app.state.client.aclose()


app = FastAPI(title="Local Tool Agent", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _message_from(payload: Dict[str, Any]) -> str:
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        raise HTTPException(status_code=422, detail="message must be a non-empty string")
    return message


@app.get("/api/health")
async def health():
    engine: Orchestrator = app.state.engine
    return {
        "ok": True,
        "backend": config.GENERATION_BACKEND,
        "model": engine.gateway.model_id,
        "model_ready": engine.gateway.is_ready(),
        "tool_server": config.MCP_URL or "bundled",
        "busy": app.state.turn_lock.locked(),
    }


@app.get("/api/tools")
async def list_tools():
    engine: Orchestrator = app.state.engine
    try:
        tools = await engine.catalog.fetch()
    except OrchestratorError as e:
        logger.warning("Tool discovery failed: %s", e)
        return JSONResponse(
            {"ok": False, "tools": [], "summary": "Tool server connected, but failed to list tools."},
            status_code=502,
        )
    return {"ok": True, "tools": [t.to_dict() for t in tools], "summary": describe_tools(tools)}


@app.post("/api/initialize")
async def initialize_model():
    engine: Orchestrator = app.state.engine
    try:
        await engine.gateway.initialize()
    except OrchestratorError as e:
        logger.error("Failed to load model %s: %s", engine.gateway.model_id, e)
        return JSONResponse({"ok": False, "error": "Failed to load model"}, status_code=502)
    return {"ok": True, "model": engine.gateway.model_id}


@app.post("/api/models/set")
async def set_model(payload: Dict[str, Any] = Body(...)):
    engine: Orchestrator = app.state.engine
    model_id = payload.get("model")
    if not isinstance(model_id, str) or not model_id.strip():
        raise HTTPException(status_code=422, detail="model must be a non-empty string")
    if app.state.turn_lock.locked():
        raise HTTPException(status_code=409, detail="A turn is in progress")
    await engine.gateway.set_model(model_id.strip())
    return {"ok": True, "model": engine.gateway.model_id, "model_ready": engine.gateway.is_ready()}


@app.post("/api/chat")
async def chat(payload: Dict[str, Any] = Body(...)):
    message = _message_from(payload)
    lock: asyncio.Lock = app.state.turn_lock
    if lock.locked():
        raise HTTPException(status_code=409, detail="A turn is in progress")
    async with lock:
        try:
            outcome = await app.state.engine.process_turn(message)
        except Exception:
            logger.exception("Turn failed")
            return JSONResponse({"ok": False, "error": GENERIC_FAILURE}, status_code=502)
    return {"ok": True, **outcome.to_dict()}


@app.post("/api/chat/stream")
async def chat_stream(payload: Dict[str, Any] = Body(...)):
    message = _message_from(payload)
    lock: asyncio.Lock = app.state.turn_lock
    if lock.locked():
        raise HTTPException(status_code=409, detail="A turn is in progress")
    # Uncontended acquire does not suspend, so no request can slip in after the check
    await lock.acquire()
    queue: "asyncio.Queue[Optional[ProgressEvent]]" = asyncio.Queue()
    turn = asyncio.create_task(app.state.engine.process_turn(message, queue.put_nowait))
    turn.add_done_callback(lambda _t: queue.put_nowait(None))
    # The lock follows the turn, not the response body, which may never be iterated
    turn.add_done_callback(lambda _t: lock.release())

    async def event_gen():
        DATA = b"data: "
        END = b"\n\n"
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield DATA + orjson.dumps({"type": "progress", **event.to_dict()}) + END
            try:
                outcome = turn.result()
            except Exception:
                logger.exception("Turn failed")
                yield DATA + orjson.dumps({"type": "error", "message": GENERIC_FAILURE}) + END
                return
            yield DATA + orjson.dumps({"type": "done", **outcome.to_dict()}) + END
        finally:
            # Client went away mid-turn: stop the turn before the next one can start
            if not turn.done():
                turn.cancel()
            await asyncio.gather(turn, return_exceptions=True)

    return StreamingResponse(event_gen(), media_type="text/event-stream")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",  # module_name:app_instance
        host=config.APP_HOST,
        port=config.APP_PORT,
    )
