# catalog.py
"""
Tool catalog access: wraps the transport's listing call and flattens its
response into an ordered list of ToolDescriptor.

Accepted listing shapes:
  - [ {name, description, inputSchema}, ... ]
  - {"tools": [ ... ]}
  - {"result": {"tools": [ ... ]}}      (raw JSON-RPC envelope)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from errors import CatalogUnavailable

logger = logging.getLogger(__name__)


class ToolTransport(Protocol):
    async def list_tools(self) -> Any: ...

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any: ...


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = None

    def arguments(self) -> List[Tuple[str, str, str]]:
        """Return (name, type tag, description) for each declared argument."""
        schema = self.input_schema if isinstance(self.input_schema, dict) else {}
        props = schema.get("properties")
        if not isinstance(props, dict):
            return []
        out: List[Tuple[str, str, str]] = []
        for arg, spec in props.items():
            spec = spec if isinstance(spec, dict) else {}
            out.append((str(arg), str(spec.get("type") or "unknown"), str(spec.get("description") or "")))
        return out

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "description": self.description}
        if self.input_schema is not None:
            data["inputSchema"] = self.input_schema
        return data

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["ToolDescriptor"]:
        if isinstance(raw, ToolDescriptor):
            return raw
        if not isinstance(raw, dict):
            return None
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            return None
        desc = raw.get("description")
        schema = raw.get("inputSchema", raw.get("input_schema"))
        return cls(
            name=name,
            description=desc if isinstance(desc, str) and desc else None,
            input_schema=schema if isinstance(schema, dict) else None,
        )


def _raw_tool_list(listing: Any) -> Optional[List[Any]]:
    if isinstance(listing, list):
        return listing
    if isinstance(listing, dict):
        if isinstance(listing.get("tools"), list):
            return listing["tools"]
        inner = listing.get("result")
        if isinstance(inner, dict) and isinstance(inner.get("tools"), list):
            return inner["tools"]
    return None


def normalize_tool_list(listing: Any) -> List[ToolDescriptor]:
    """Flatten any accepted listing shape; unknown shapes yield an empty catalog."""
    raw = _raw_tool_list(listing)
    if raw is None:
        logger.warning("Unrecognized tool listing shape: %s", type(listing).__name__)
        return []
    tools: List[ToolDescriptor] = []
    seen: set[str] = set()
    for item in raw:
        tool = ToolDescriptor.from_raw(item)
        if tool is None:
            logger.debug("Skipping malformed tool entry: %r", item)
            continue
        # Names are unique within a snapshot; first one wins
        if tool.name in seen:
            continue
        seen.add(tool.name)
        tools.append(tool)
    return tools


def describe_tools(tools: List[ToolDescriptor]) -> str:
    lines = [f"• {t.name}: {t.description or 'No description'}" for t in tools]
    return f"Found {len(tools)} tools:\n" + "\n".join(lines)


class ToolRegistry:
    """Name-keyed view of the last fetched catalog, in insertion order."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}

    def register_tool(self, tool: ToolDescriptor) -> None:
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def get_all_tools(self) -> List[ToolDescriptor]:
        return list(self._tools.values())

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)


class ToolCatalog:
    """
    Fetches a fresh snapshot per call unless caching is enabled, in which case
    the last successful snapshot is reused until invalidate().
    """

    def __init__(self, transport: ToolTransport, registry: Optional[ToolRegistry] = None, cache: bool = False):
        self.transport = transport
        self.registry = registry or ToolRegistry()
        self.cache = cache
        self._snapshot: Optional[List[ToolDescriptor]] = None

    async def fetch(self) -> List[ToolDescriptor]:
        if self.cache and self._snapshot is not None:
            return list(self._snapshot)
        try:
            listing = await self.transport.list_tools()
        except Exception as e:
            raise CatalogUnavailable(f"tool listing failed: {e}") from e

        tools = normalize_tool_list(listing)
        self.registry.clear()
        for tool in tools:
            self.registry.register_tool(tool)
        if self.cache:
            self._snapshot = list(tools)
        return tools

    def invalidate(self) -> None:
        self._snapshot = None
