# extractor.py
"""
Tool-call extraction: decide whether raw model output ends in a JSON tool call
or is a conversational answer.

Pipeline (deterministic, no model involvement):
  1) strip fenced code blocks, keeping their trimmed inner content
  2) trim; if the text does not end in '}' it is conversational, no JSON scan
  3) scan backward balancing braces to find the trailing object
  4) parse it; a dict with a non-empty string tool_name is a tool call
  5) otherwise clean the raw output with the role-marker strategy

There is no error outcome: every input is classified one way or the other.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import orjson


FENCE_RE = re.compile(r"```(?:[A-Za-z0-9_+.-]+)?\s*(.*?)\s*```", re.DOTALL)


class ResponseCleanup(Protocol):
    def __call__(self, text: str) -> str: ...


class RoleMarkerCleanup:
    """
    Keep only the text after the last case-insensitive occurrence of a role
    marker. Chat templates on some backends echo "assistant" into the output.
    """

    def __init__(self, marker: str = "assistant"):
        self.marker = marker

    def __call__(self, text: str) -> str:
        if not self.marker:
            return text
        idx = text.lower().rfind(self.marker.lower())
        if idx == -1:
            return text
        return text[idx + len(self.marker):].strip()


class NoCleanup:
    def __call__(self, text: str) -> str:
        return text


@dataclass(frozen=True)
class ToolCallRequest:
    tool_name: str
    tool_arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Extraction:
    """Exactly one of tool_call / text is meaningful."""
    tool_call: Optional[ToolCallRequest] = None
    text: str = ""

    @property
    def is_tool_call(self) -> bool:
        return self.tool_call is not None


def strip_code_fences(text: str) -> str:
    return FENCE_RE.sub(lambda m: m.group(1).strip(), text)


def trailing_json_candidate(text: str) -> Optional[str]:
    """
    Return the balanced {...} block that ends the text, or None.
    Only the single trailing object is considered.
    """
    text = text.strip()
    if not text.endswith("}"):
        return None
    depth = 0
    for i in range(len(text) - 1, -1, -1):
        ch = text[i]
        if ch == "}":
            depth += 1
        elif ch == "{":
            depth -= 1
        if depth == 0:
            return text[i:]
    return None


def parse_tool_call(candidate: str) -> Optional[ToolCallRequest]:
    try:
        obj = orjson.loads(candidate)
    except orjson.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None
    name = obj.get("tool_name")
    if not isinstance(name, str) or not name:
        return None
    args = obj.get("tool_arguments")
    return ToolCallRequest(tool_name=name, tool_arguments=args if isinstance(args, dict) else {})


def extract(raw: str, cleanup: Optional[ResponseCleanup] = None) -> Extraction:
    cleanup = cleanup or RoleMarkerCleanup()
    candidate = trailing_json_candidate(strip_code_fences(raw))
    if candidate is not None:
        call = parse_tool_call(candidate)
        if call is not None:
            return Extraction(tool_call=call)
    return Extraction(text=cleanup(raw))
