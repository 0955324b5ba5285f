# orchestrator.py
"""
One request/response cycle per user turn:

  catalog -> prompt -> generation -> extraction -> (tool dispatch -> normalize)

At most one tool call per turn, no retries. Catalog failures degrade to an
empty tool set; generation and dispatch failures propagate to the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from catalog import ToolCatalog, ToolTransport
from errors import OrchestratorError, ToolDispatchError
from extractor import ResponseCleanup, RoleMarkerCleanup, extract
from generation import GenerationGateway, ProgressSink
from normalizer import normalize_result
from prompt_compiler import compile_messages

logger = logging.getLogger(__name__)


def _seconds(start: float, end: float) -> str:
    return f"{end - start:.2f}"


@dataclass(frozen=True)
class TurnOutcome:
    response_text: str
    model_select_seconds: str
    total_seconds: str
    tool_call_seconds: Optional[str] = None
    tool_name: Optional[str] = None
    tool_arguments: Dict[str, Any] = field(default_factory=dict)

    @property
    def used_tool(self) -> bool:
        return self.tool_call_seconds is not None

    def timing_label(self) -> str:
        if self.used_tool:
            return (
                f"Tool selection: {self.model_select_seconds}s | "
                f"Tool exec: {self.tool_call_seconds}s | "
                f"Total: {self.total_seconds}s"
            )
        return f"Total time: {self.total_seconds}s"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response": self.response_text,
            "model_select_seconds": self.model_select_seconds,
            "tool_call_seconds": self.tool_call_seconds,
            "total_seconds": self.total_seconds,
            "tool_name": self.tool_name,
            "tool_arguments": self.tool_arguments,
            "timing": self.timing_label(),
        }


def format_tool_response(tool_name: str, output: str) -> str:
    return f"Response from '{tool_name}':\n{output}"


class Orchestrator:
    """
    Not safe for overlapping turns against the same gateway/transport;
    callers serialize turns per conversation.
    """

    def __init__(
        self,
        transport: ToolTransport,
        gateway: GenerationGateway,
        catalog: Optional[ToolCatalog] = None,
        cleanup: Optional[ResponseCleanup] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.transport = transport
        self.gateway = gateway
        self.catalog = catalog or ToolCatalog(transport)
        self.cleanup = cleanup or RoleMarkerCleanup()
        self.clock = clock

    async def _fetch_tools(self):
        try:
            return await self.catalog.fetch()
        except OrchestratorError as e:
            logger.warning("Continuing without tools: %s", e)
            return []

    async def process_turn(self, message: str, on_progress: Optional[ProgressSink] = None) -> TurnOutcome:
        t0 = self.clock()
        tools = await self._fetch_tools()

        messages = compile_messages(tools, message)
        logger.info("Generating from %d messages (%d tools in catalog)", len(messages), len(tools))
        raw = await self.gateway.generate(messages, on_progress)
        t1 = self.clock()
        logger.debug("Raw model output: %r", raw)

        result = extract(raw, self.cleanup)
        if not result.is_tool_call:
            logger.info("Conversational answer (%ss)", _seconds(t0, t1))
            return TurnOutcome(
                response_text=result.text,
                model_select_seconds=_seconds(t0, t1),
                total_seconds=_seconds(t0, t1),
            )

        call = result.tool_call
        logger.info("Model selected tool %s with arguments %s", call.tool_name, call.tool_arguments)
        t2 = self.clock()
        try:
            tool_result = await self.transport.call_tool(call.tool_name, call.tool_arguments)
        except Exception as e:
            raise ToolDispatchError(call.tool_name, str(e)) from e
        finally:
            t3 = self.clock()
        logger.info("Tool %s returned in %ss", call.tool_name, _seconds(t2, t3))

        return TurnOutcome(
            response_text=format_tool_response(call.tool_name, normalize_result(tool_result)),
            model_select_seconds=_seconds(t0, t1),
            tool_call_seconds=_seconds(t2, t3),
            total_seconds=_seconds(t0, t3),
            tool_name=call.tool_name,
            tool_arguments=dict(call.tool_arguments),
        )
