# config.py
import os
import logging


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Generation backend
GENERATION_BACKEND = os.getenv("GENERATION_BACKEND", "ollama").strip().lower()
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
MODEL = os.getenv("MODEL", "granite4:micro")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "http://localhost:1234/v1")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "lm-studio")
MAX_NEW_TOKENS = _env_int("MAX_NEW_TOKENS", 1024)
TEMPERATURE = _env_float("TEMPERATURE", 0.7)

# Tool server (empty URL -> bundled in-process tools)
MCP_URL = os.getenv("MCP_URL", "").strip()
MCP_CLIENT_NAME = os.getenv("MCP_CLIENT_NAME", "local-tool-agent")
MCP_CLIENT_VERSION = os.getenv("MCP_CLIENT_VERSION", "1.0.0")
TOOL_CATALOG_CACHE = _env_bool("TOOL_CATALOG_CACHE", False)

# Conversational cleanup
ROLE_MARKER = os.getenv("ROLE_MARKER", "assistant")

# Service
APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = _env_int("APP_PORT", 8000)


def _to_level(name: str, default: int) -> int:
    level = getattr(logging, (name or "").upper(), None)
    return level if isinstance(level, int) else default


def configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    level = _to_level(log_level_name, logging.INFO)

    logging.basicConfig(level=level, format=log_format, force=True)
    logging.captureWarnings(True)

    desired_levels = {
        "uvicorn": os.getenv("UVICORN_LEVEL", log_level_name),
        "uvicorn.error": os.getenv("UVICORN_ERROR_LEVEL", log_level_name),
        "uvicorn.access": os.getenv("UVICORN_ACCESS_LEVEL", "WARNING"),
        "httpx": os.getenv("HTTPX_LEVEL", "WARNING"),
        "httpcore": os.getenv("HTTPCORE_LEVEL", "WARNING"),
        "asyncio": os.getenv("ASYNCIO_LEVEL", "WARNING"),
    }
    for name, lvl_name in desired_levels.items():
        lg = logging.getLogger(name)
        # Drop library-attached handlers so records only reach root once
        for h in list(lg.handlers):
            lg.removeHandler(h)
        lg.propagate = True
        lg.setLevel(_to_level(lvl_name, level))
