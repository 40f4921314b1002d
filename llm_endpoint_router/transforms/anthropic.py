"""Anthropic Messages API wire format."""

from __future__ import annotations

import json
from typing import Any

from llm_endpoint_router.model_utils import ANTHROPIC_MODELS
from llm_endpoint_router.schemas import (
    ChatMessage,
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    Usage,
    new_completion_id,
)
from llm_endpoint_router.transforms._common import (
    as_str,
    assistant_choice,
    delta_choice,
    dig,
    drop_none_fields,
    extract_text_content,
    function_tools,
)

DEFAULT_MAX_TOKENS = 1024

MODELS = ANTHROPIC_MODELS

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def request_path(request: CompletionRequest, native_model: str) -> str:
    return "/messages"


def _finish_reason(stop_reason: Any) -> str | None:
    if not isinstance(stop_reason, str) or not stop_reason:
        return None
    return _STOP_REASONS.get(stop_reason, stop_reason)


def _tool_use_block(tool_call: dict[str, Any]) -> dict[str, Any]:
    function = tool_call.get("function") or {}
    raw_arguments = function.get("arguments")
    try:
        arguments = json.loads(raw_arguments) if isinstance(raw_arguments, str) else {}
    except ValueError:
        arguments = {}
    return {
        "type": "tool_use",
        "id": tool_call.get("id"),
        "name": function.get("name"),
        "input": arguments if isinstance(arguments, dict) else {},
    }


def _message(message: ChatMessage) -> dict[str, Any]:
    if message.role == "tool":
        return {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": extract_text_content(message.content),
                }
            ],
        }
    if message.role == "assistant" and message.tool_calls:
        blocks: list[dict[str, Any]] = []
        text = extract_text_content(message.content) if message.content else ""
        if text:
            blocks.append({"type": "text", "text": text})
        blocks.extend(_tool_use_block(call) for call in message.tool_calls)
        return {"role": "assistant", "content": blocks}
    if message.role == "system":
        # Only a leading system message maps to the top-level field.
        return {"role": "user", "content": message.content}
    return {"role": message.role, "content": message.content}


def _tool_choice(tool_choice: Any) -> dict[str, Any] | None:
    if tool_choice == "auto":
        return {"type": "auto"}
    if tool_choice == "required":
        return {"type": "any"}
    name = dig(tool_choice, "function", "name")
    if isinstance(name, str):
        return {"type": "tool", "name": name}
    return None


def to_provider_request(request: CompletionRequest) -> dict[str, Any]:
    messages = list(request.messages)
    system: str | None = None
    if messages and messages[0].role == "system":
        system = extract_text_content(messages[0].content)
        messages = messages[1:]

    tools = [
        {
            "name": function["name"],
            "description": function.get("description"),
            "input_schema": function.get("parameters")
            or {"type": "object", "properties": {}},
        }
        for function in function_tools(request.tools)
    ]
    use_tools = bool(tools) and request.tool_choice != "none"

    payload = {
        "model": MODELS.to_provider(request.model),
        "messages": [_message(message) for message in messages],
        "system": system,
        "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        "temperature": request.temperature,
        "top_p": request.top_p,
        "top_k": request.top_k,
        "stop_sequences": request.stop or None,
        "tools": tools if use_tools else None,
        "tool_choice": _tool_choice(request.tool_choice) if use_tools else None,
        "stream": True if request.stream else None,
    }
    return drop_none_fields(payload)


def from_provider_response(payload: dict[str, Any], model: str) -> CompletionResponse:
    text_parts: list[str] = []
    tool_calls: list[dict[str, Any]] = []
    for block in payload.get("content") or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            text_parts.append(as_str(block.get("text")))
        elif block.get("type") == "tool_use":
            tool_calls.append(
                {
                    "id": as_str(block.get("id")),
                    "type": "function",
                    "function": {
                        "name": as_str(block.get("name")),
                        "arguments": json.dumps(block.get("input") or {}),
                    },
                }
            )

    upstream_model = as_str(payload.get("model"))
    return CompletionResponse(
        id=as_str(payload.get("id")) or new_completion_id("anthropic"),
        model=MODELS.to_unified(upstream_model) if upstream_model else model,
        choices=[
            assistant_choice(
                "".join(text_parts),
                _finish_reason(payload.get("stop_reason")),
                tool_calls=tool_calls,
            )
        ],
        usage=Usage.from_counts(
            dig(payload, "usage", "input_tokens"),
            dig(payload, "usage", "output_tokens"),
        ),
    )


def from_provider_stream_event(
    event: dict[str, Any], model: str
) -> CompletionChunk | None:
    event_type = event.get("type")
    chunk_id = as_str(event.get("message_id")) or new_completion_id("anthropic")

    if event_type == "content_block_delta":
        delta = event.get("delta") if isinstance(event.get("delta"), dict) else {}
        if delta.get("type") == "input_json_delta":
            index = event.get("index")
            tool_call = {
                "index": index if isinstance(index, int) else 0,
                "function": {"arguments": as_str(delta.get("partial_json"))},
            }
            choice = delta_choice("", tool_calls=[tool_call])
        else:
            choice = delta_choice(as_str(delta.get("text")))
        return CompletionChunk(id=chunk_id, model=model, choices=[choice])

    if event_type == "message_stop":
        finish_reason = _finish_reason(event.get("stop_reason")) or "stop"
        return CompletionChunk(
            id=chunk_id, model=model, choices=[delta_choice("", finish_reason)]
        )

    return None
