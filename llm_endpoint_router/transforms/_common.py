from __future__ import annotations

import json
from typing import Any

from llm_endpoint_router.schemas import ChatMessage, Choice, ChunkChoice


def coerce_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def extract_text_content(content: Any) -> str:
    """Flatten string or content-part message content into plain text."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return coerce_text(content)

    chunks: list[str] = []
    for item in content:
        if isinstance(item, str):
            if item.strip():
                chunks.append(item)
            continue
        if not isinstance(item, dict):
            continue
        raw_text = item.get("text")
        if isinstance(raw_text, str) and raw_text.strip():
            chunks.append(raw_text)
    text = "\n".join(chunks)
    return text if text.strip() else coerce_text(content)


def drop_none_fields(value: Any) -> Any:
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for key, item in value.items():
            if item is None:
                continue
            cleaned_item = drop_none_fields(item)
            if cleaned_item is None:
                continue
            cleaned[key] = cleaned_item
        return cleaned
    if isinstance(value, list):
        return [drop_none_fields(item) for item in value if item is not None]
    return value


def dig(value: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists, returning None at the first missing step."""
    current = value
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or not -len(current) <= step < len(current):
                return None
            current = current[step]
            continue
        if not isinstance(current, dict):
            return None
        current = current.get(step)
    return current


def as_str(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def lower_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip().lower()
    return None


def function_tools(tools: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """Return the ``function`` objects of OpenAI-style tool definitions."""
    functions: list[dict[str, Any]] = []
    for tool in tools or []:
        if not isinstance(tool, dict):
            continue
        function = tool.get("function") if tool.get("type", "function") == "function" else None
        if isinstance(function, dict) and isinstance(function.get("name"), str):
            functions.append(function)
    return functions


def assistant_choice(
    text: str,
    finish_reason: str | None,
    tool_calls: list[dict[str, Any]] | None = None,
    index: int = 0,
) -> Choice:
    return Choice(
        index=index,
        message=ChatMessage(role="assistant", content=text, tool_calls=tool_calls or None),
        finish_reason=finish_reason,
    )


def delta_choice(
    text: str,
    finish_reason: str | None = None,
    *,
    role: str = "assistant",
    tool_calls: list[dict[str, Any]] | None = None,
    index: int = 0,
) -> ChunkChoice:
    return ChunkChoice(
        index=index,
        message=ChatMessage(role=role, content=text, tool_calls=tool_calls or None),
        finish_reason=finish_reason,
    )
