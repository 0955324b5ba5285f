# mcp_client.py
"""
JSON-RPC 2.0 tool transport for an MCP server reachable over HTTP.

Requests are POSTed as single JSON-RPC messages; the server may answer with
plain JSON or with an SSE stream whose data lines carry the response.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, Optional

import httpx
import orjson

from errors import ToolTransportError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"
SESSION_HEADER = "Mcp-Session-Id"


def _parse_sse_response(body: bytes, request_id: int) -> Optional[Dict[str, Any]]:
    """Pick the JSON-RPC response matching request_id out of an SSE body."""
    for record in body.split(b"\n\n"):
        data_lines = [
            line.split(b":", 1)[1].strip()
            for line in record.split(b"\n")
            if line.lower().startswith(b"data:")
        ]
        if not data_lines:
            continue
        try:
            msg = orjson.loads(b"\n".join(data_lines))
        except orjson.JSONDecodeError:
            continue
        if isinstance(msg, dict) and msg.get("id") == request_id:
            return msg
    return None


class McpClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        client_name: str = "local-tool-agent",
        client_version: str = "1.0.0",
        timeout: Optional[float] = 60.0,
    ):
        self.client = client
        self.url = url
        self.client_name = client_name
        self.client_version = client_version
        self.timeout = timeout
        self.session_id: Optional[str] = None
        self.server_info: Dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._connected = False

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    async def _post(self, message: Dict[str, Any]) -> httpx.Response:
        try:
            resp = await self.client.post(
                self.url,
                content=orjson.dumps(message),
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.RequestError as e:
            raise ToolTransportError(f"MCP request failed: {e}") from e
        if resp.status_code >= 400:
            raise ToolTransportError(f"HTTP {resp.status_code} from tool server: {resp.text[:300]}")
        session = resp.headers.get(SESSION_HEADER)
        if session:
            self.session_id = session
        return resp

    async def send_request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send one JSON-RPC request and return its result member."""
        request_id = next(self._ids)
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params:
            message["params"] = params
        logger.debug("MCP -> %s", method)
        resp = await self._post(message)

        ctype = resp.headers.get("content-type", "")
        if "text/event-stream" in ctype:
            payload = _parse_sse_response(resp.content, request_id)
            if payload is None:
                raise ToolTransportError(f"No response to {method} in event stream")
        else:
            try:
                payload = orjson.loads(resp.content)
            except orjson.JSONDecodeError as e:
                raise ToolTransportError(f"Unparsable response to {method}: {e}") from e

        if not isinstance(payload, dict):
            raise ToolTransportError(f"Unexpected response to {method}")
        err = payload.get("error")
        if err:
            detail = err.get("message") if isinstance(err, dict) else str(err)
            raise ToolTransportError(f"{method} failed: {detail}")
        return payload.get("result")

    async def send_notification(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        await self._post(message)

    async def connect(self) -> None:
        if self._connected:
            return
        result = await self.send_request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": self.client_name, "version": self.client_version},
            },
        )
        self.server_info = (result or {}).get("serverInfo", {}) if isinstance(result, dict) else {}
        await self.send_notification("notifications/initialized")
        self._connected = True
        logger.info("MCP client connected to %s (%s)", self.url, self.server_info.get("name", "unknown server"))

    async def list_tools(self) -> Any:
        await self.connect()
        return await self.send_request("tools/list")

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        await self.connect()
        return await self.send_request("tools/call", {"name": name, "arguments": arguments})

    async def disconnect(self) -> None:
        if self.session_id:
            try:
                await self.client.delete(self.url, headers=self._headers(), timeout=5.0)
            except httpx.RequestError as e:
                logger.debug("MCP session close failed: %s", e)
        self.session_id = None
        self._connected = False
