# tools.py
"""
Bundled in-process tool server. Used when no remote MCP server is configured;
speaks the same list_tools()/call_tool() interface as McpClient and answers
with MCP-shaped CallToolResult payloads.
"""

import ast
import math
import re
import urllib.parse
import logging
from typing import Any, Awaitable, Callable, Dict, List

import asyncio
import httpx
import orjson
from bs4 import BeautifulSoup

from errors import ToolTransportError

logger = logging.getLogger(__name__)


# ----------------- Helpers & Schema -----------------

def _clean_text(s: str) -> str:
    return re.sub(r"\s+", " ", s).strip()


def _host(url: str) -> str:
    try:
        return urllib.parse.urlsplit(url).hostname or ""
    except ValueError:
        return ""


def _ok(result: Any) -> Dict[str, Any]:
    return {"ok": True, "result": result}


def _err(msg: str) -> Dict[str, Any]:
    return {"ok": False, "error": str(msg)}


async def _retry_async(fn, *args, tries: int = 2, delay: float = 0.5, **kwargs):
    """
    Minimal async retry helper for flaky I/O.
    Retries while the result is an ok=False payload.
    """
    last = None
    for i in range(max(1, tries)):
        res = await fn(*args, **kwargs)
        if res.get("ok"):
            return res
        last = res
        if i < tries - 1:
            await asyncio.sleep(delay)
    return last


def _as_call_result(payload: Dict[str, Any]) -> Dict[str, Any]:
    failed = not payload.get("ok")
    value = payload.get("error") if failed else payload.get("result")
    return {
        "content": [{"type": "text", "text": orjson.dumps({"result": value}, default=str).decode()}],
        "structuredContent": {"result": value},
        "isError": failed,
    }


TOOL_SPECS: List[Dict[str, Any]] = [
    {
        "name": "eval_expr",
        "description": "Evaluate an arithmetic expression (math functions allowed) and return the value.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "expr": {"type": "string", "description": "Expression, e.g. 'sqrt(2) * 10'"},
            },
            "required": ["expr"],
        },
    },
    {
        "name": "web_search",
        "description": "Search the web and return the top results with titles, URLs and snippets.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
                "k": {"type": "integer", "description": "Number of results (1-10)"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "open_url",
        "description": "Open a URL and return its title and readable text.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to fetch"},
                "max_chars": {"type": "integer", "description": "Max characters of extracted text"},
            },
            "required": ["url"],
        },
    },
    {
        "name": "notes_write",
        "description": "Save a short note under a key.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "key": {"type": "string", "description": "Note key"},
                "content": {"type": "string", "description": "Note text"},
            },
            "required": ["key", "content"],
        },
    },
    {
        "name": "notes_read",
        "description": "Read a saved note by key.",
        "inputSchema": {
            "type": "object",
            "properties": {"key": {"type": "string", "description": "Note key"}},
            "required": ["key"],
        },
    },
    {
        "name": "notes_list",
        "description": "List the keys of all saved notes.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


# ----------------- Network: Search & Open -----------------

async def _ddg_search_html(q: str, k: int = 5) -> Dict[str, Any]:
    """Scrape DuckDuckGo's HTML results into [{title,url,snippet}, ...]."""
    headers = {"User-Agent": "Mozilla/5.0"}
    try:
        async with httpx.AsyncClient(timeout=20.0, follow_redirects=True) as client:
            r = await client.get("https://duckduckgo.com/html/", params={"q": q}, headers=headers)
            r.raise_for_status()
    except httpx.HTTPError as e:
        return _err(f"web search failed: {e}")
    return _ok(parse_ddg_results(r.text, k))


def parse_ddg_results(html: str, k: int = 5) -> List[Dict[str, str]]:
    soup = BeautifulSoup(html, "html.parser")
    items = []
    for res in soup.select("div.result"):
        if len(items) >= k:
            break
        a = res.select_one("a.result__a")
        if not a:
            continue
        href = a.get("href", "")
        if "uddg=" in href:
            # Unwrap DDG redirect
            qs = urllib.parse.parse_qs(urllib.parse.urlsplit(href).query)
            href = urllib.parse.unquote(qs.get("uddg", [href])[0])
        if not (href.startswith("http://") or href.startswith("https://")):
            continue
        snippet_el = res.select_one(".result__snippet")
        items.append({
            "title": a.get_text(" ", strip=True),
            "url": href,
            "host": _host(href),
            "snippet": snippet_el.get_text(" ", strip=True) if snippet_el else "",
        })
    return items


def extract_page(html: str, url: str, max_chars: int = 6000) -> Dict[str, Any]:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "svg", "form", "header", "footer", "nav", "aside"]):
        tag.decompose()

    og_title = soup.find("meta", attrs={"property": "og:title"})
    title = (og_title.get("content", "").strip() if og_title else "") or (
        soup.title.get_text(strip=True) if soup.title else ""
    )
    main = soup.find(["article", "main"]) or soup.body or soup
    parts: List[str] = []
    for el in main.find_all(["h1", "h2", "h3", "p", "li"], limit=1600):
        txt = el.get_text(" ", strip=True)
        if txt:
            parts.append(txt)
    text = _clean_text(" ".join(parts))
    if len(text) > max_chars:
        text = text[:max_chars] + " …"
    return {"title": title, "url": url, "host": _host(url), "text": text}


async def _open_and_extract(url: str, max_chars: int = 6000) -> Dict[str, Any]:
    headers = {"User-Agent": "Mozilla/5.0"}
    try:
        async with httpx.AsyncClient(timeout=25.0, follow_redirects=True) as client:
            r = await client.get(url, headers=headers)
            r.raise_for_status()
    except httpx.HTTPError as e:
        return _err(f"open url failed: {e}")
    return _ok(extract_page(r.text, url, max_chars))


# ----------------- Local utility tools -----------------

_MATH_NAMES: Dict[str, Any] = {
    name: getattr(math, name) for name in dir(math) if not name.startswith("_")
}
_MATH_NAMES.update({"abs": abs, "round": round, "min": min, "max": max})


def _safe_eval(expr: str) -> Any:
    tree = ast.parse(expr, mode="eval")
    for node in ast.walk(tree):
        if isinstance(node, (ast.Attribute, ast.Lambda, ast.Subscript)):
            raise ValueError(f"unsupported syntax: {type(node).__name__}")
        if isinstance(node, ast.Name) and node.id not in _MATH_NAMES:
            raise ValueError(f"unknown name: {node.id}")
    return eval(compile(tree, "<expr>", "eval"), {"__builtins__": {}}, dict(_MATH_NAMES))


class LocalToolServer:
    def __init__(self) -> None:
        self._notes: Dict[str, str] = {}
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "eval_expr": self._eval_expr,
            "web_search": self._web_search,
            "open_url": self._open_url,
            "notes_write": self._notes_write,
            "notes_read": self._notes_read,
            "notes_list": self._notes_list,
        }

    async def list_tools(self) -> Dict[str, Any]:
        return {"tools": [dict(spec) for spec in TOOL_SPECS]}

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            raise ToolTransportError(f"Unknown tool: {name}")
        logger.info("Running bundled tool %s", name)
        return _as_call_result(await handler(arguments or {}))

    async def _eval_expr(self, args: Dict[str, Any]) -> Dict[str, Any]:
        expr = str(args.get("expr") or "").strip()
        if not expr:
            return _err("missing expr")
        try:
            return _ok(_safe_eval(expr))
        except (SyntaxError, ValueError, TypeError, ArithmeticError) as e:
            return _err(f"{type(e).__name__}: {e}")

    async def _web_search(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = str(args.get("query") or args.get("q") or "").strip()
        if not query:
            return _err("missing query")
        try:
            k = max(1, min(10, int(args.get("k") or 5)))
        except (TypeError, ValueError):
            k = 5
        return await _retry_async(_ddg_search_html, query, k, tries=2, delay=0.4)

    async def _open_url(self, args: Dict[str, Any]) -> Dict[str, Any]:
        url = str(args.get("url") or "").strip()
        if not (url.startswith("http://") or url.startswith("https://")):
            return _err("url must start with http:// or https://")
        try:
            max_chars = int(args.get("max_chars") or 6000)
        except (TypeError, ValueError):
            max_chars = 6000
        return await _retry_async(_open_and_extract, url, max_chars, tries=2, delay=0.4)

    async def _notes_write(self, args: Dict[str, Any]) -> Dict[str, Any]:
        key = str(args.get("key") or "").strip()
        if not key:
            return _err("missing key")
        self._notes[key] = str(args.get("content") or "")
        return _ok(f"Saved note '{key}'.")

    async def _notes_read(self, args: Dict[str, Any]) -> Dict[str, Any]:
        key = str(args.get("key") or "").strip()
        if key in self._notes:
            return _ok(self._notes[key])
        return _err("not found")

    async def _notes_list(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return _ok(list(self._notes.keys()))
