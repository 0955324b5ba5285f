# normalizer.py
"""
Turns a raw tool result into display text. Tool servers wrap payloads
differently, so extraction runs an ordered list of strategies; the first
one that finds a value wins.
"""

from typing import Any, Callable, List, Tuple

import orjson


MISSING = object()

Strategy = Callable[[Any], Any]


def pretty_json(value: Any) -> str:
    return orjson.dumps(
        value,
        option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS,
        default=str,
    ).decode()


def top_level_result(raw: Any) -> Any:
    if isinstance(raw, dict) and "result" in raw:
        return raw["result"]
    return MISSING


def structured_content_result(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return MISSING
    structured = raw.get("structuredContent")
    if isinstance(structured, dict) and "result" in structured:
        return structured["result"]
    return MISSING


def text_content_result(raw: Any) -> Any:
    if not isinstance(raw, dict) or not isinstance(raw.get("content"), list):
        return MISSING
    for item in raw["content"]:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text = item.get("text")
        if not isinstance(text, str):
            continue
        try:
            parsed = orjson.loads(text)
        except orjson.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and "result" in parsed:
            return parsed["result"]
    return MISSING


DEFAULT_STRATEGIES: List[Tuple[str, Strategy]] = [
    ("result", top_level_result),
    ("structuredContent.result", structured_content_result),
    ("content[text].result", text_content_result),
]


def format_value(value: Any) -> str:
    return value if isinstance(value, str) else pretty_json(value)


def normalize_result(raw: Any, strategies: List[Tuple[str, Strategy]] = DEFAULT_STRATEGIES) -> str:
    for _tag, strategy in strategies:
        value = strategy(raw)
        if value is not MISSING:
            return format_value(value)
    return "Output: " + pretty_json(raw)
