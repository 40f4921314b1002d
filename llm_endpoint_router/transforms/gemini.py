"""Google Gemini ``generateContent`` wire format."""

from __future__ import annotations

import json
from typing import Any

from llm_endpoint_router.model_utils import GEMINI_MODELS
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
    lower_or_none,
)

MODELS = GEMINI_MODELS

_ROLES = {"assistant": "model", "system": "user", "tool": "user"}


def request_path(request: CompletionRequest, native_model: str) -> str:
    if request.stream:
        return f"/models/{native_model}:streamGenerateContent?alt=sse"
    return f"/models/{native_model}:generateContent"


def _content(message: ChatMessage) -> dict[str, Any]:
    return {
        "role": _ROLES.get(message.role, "user"),
        "parts": [{"text": extract_text_content(message.content)}],
    }


def generation_config(request: CompletionRequest) -> dict[str, Any]:
    """Sampling parameters under their camelCase names (shared with Vertex)."""
    return {
        "temperature": request.temperature,
        "topP": request.top_p,
        "topK": request.top_k,
        "maxOutputTokens": request.max_tokens,
        "stopSequences": request.stop or None,
        "seed": request.seed,
    }


def _structured_output(response_format: dict[str, Any] | None) -> dict[str, Any]:
    if not isinstance(response_format, dict):
        return {}
    format_type = response_format.get("type")
    if format_type == "json_object":
        return {"responseMimeType": "application/json"}
    if format_type == "json_schema":
        schema = dig(response_format, "json_schema", "schema")
        return {
            "responseMimeType": "application/json",
            "responseSchema": schema if isinstance(schema, dict) else None,
        }
    return {}


def to_provider_request(request: CompletionRequest) -> dict[str, Any]:
    config = generation_config(request)
    config.update(_structured_output(request.response_format))

    declarations = [
        {
            "name": function["name"],
            "description": function.get("description"),
            "parameters": function.get("parameters"),
        }
        for function in function_tools(request.tools)
    ]

    payload = {
        "contents": [_content(message) for message in request.messages],
        "generationConfig": drop_none_fields(config) or None,
        "tools": [{"functionDeclarations": declarations}] if declarations else None,
    }
    return drop_none_fields(payload)


def _candidate_parts(payload: dict[str, Any]) -> list[Any]:
    parts = dig(payload, "candidates", 0, "content", "parts")
    return parts if isinstance(parts, list) else []


def _tool_calls(parts: list[Any]) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []
    for position, part in enumerate(parts):
        call = dig(part, "functionCall")
        if not isinstance(call, dict):
            continue
        calls.append(
            {
                "id": f"call_{position}",
                "type": "function",
                "function": {
                    "name": as_str(call.get("name")),
                    "arguments": json.dumps(call.get("args") or {}),
                },
            }
        )
    return calls


def _usage(payload: dict[str, Any]) -> Usage:
    return Usage.from_counts(
        dig(payload, "usageMetadata", "promptTokenCount"),
        dig(payload, "usageMetadata", "candidatesTokenCount"),
    )


def _model(payload: dict[str, Any], model: str) -> str:
    version = as_str(payload.get("modelVersion"))
    if version and MODELS.knows(version):
        return MODELS.to_unified(version)
    return model


def from_provider_response(payload: dict[str, Any], model: str) -> CompletionResponse:
    parts = _candidate_parts(payload)
    return CompletionResponse(
        id=as_str(payload.get("responseId")) or new_completion_id("gemini"),
        model=_model(payload, model),
        choices=[
            assistant_choice(
                as_str(dig(parts, 0, "text")),
                lower_or_none(dig(payload, "candidates", 0, "finishReason")),
                tool_calls=_tool_calls(parts),
            )
        ],
        usage=_usage(payload),
    )


def from_provider_stream_event(
    event: dict[str, Any], model: str
) -> CompletionChunk | None:
    parts = _candidate_parts(event)
    usage = _usage(event) if isinstance(event.get("usageMetadata"), dict) else None
    return CompletionChunk(
        id=as_str(event.get("responseId")) or new_completion_id("gemini"),
        model=_model(event, model),
        choices=[
            delta_choice(
                as_str(dig(parts, 0, "text")),
                lower_or_none(dig(event, "candidates", 0, "finishReason")),
                tool_calls=_tool_calls(parts),
            )
        ],
        usage=usage,
    )
