"""Vertex AI ``predict`` wire format."""

from __future__ import annotations

from typing import Any

from llm_endpoint_router.model_utils import VERTEX_MODELS
from llm_endpoint_router.schemas import (
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
)
from llm_endpoint_router.transforms.gemini import generation_config

MODELS = VERTEX_MODELS


def request_path(request: CompletionRequest, native_model: str) -> str:
    return f"/models/{native_model}:predict"


def to_provider_request(request: CompletionRequest) -> dict[str, Any]:
    messages = [
        {"author": message.role, "content": extract_text_content(message.content)}
        for message in request.messages
    ]
    payload = {
        "instances": [{"messages": messages}],
        "parameters": drop_none_fields(generation_config(request)) or None,
    }
    return drop_none_fields(payload)


def _prediction_text(prediction: Any) -> str | None:
    content = dig(prediction, "content")
    if isinstance(content, str):
        return content
    candidate = dig(prediction, "candidates", 0, "content")
    if isinstance(candidate, str):
        return candidate
    return None


def _usage(payload: dict[str, Any]) -> Usage:
    token_count = dig(payload, "metadata", "tokenCount")
    if not isinstance(token_count, dict):
        return Usage()
    prompt = token_count.get("promptTokenCount")
    output = token_count.get("outputTokenCount")
    # Newer responses nest the counts as {"totalTokens": n}.
    return Usage.from_counts(
        dig(prompt, "totalTokens") if isinstance(prompt, dict) else prompt,
        dig(output, "totalTokens") if isinstance(output, dict) else output,
    )


def from_provider_response(payload: dict[str, Any], model: str) -> CompletionResponse:
    text = _prediction_text(dig(payload, "predictions", 0))
    return CompletionResponse(
        id=new_completion_id("vertex"),
        model=model,
        choices=[assistant_choice(text or "", "stop" if text is not None else None)],
        usage=_usage(payload),
    )


def from_provider_stream_event(
    event: dict[str, Any], model: str
) -> CompletionChunk | None:
    text = _prediction_text(dig(event, "predictions", 0))
    if text is None:
        return None
    return CompletionChunk(
        id=new_completion_id("vertex"),
        model=model,
        choices=[delta_choice(text)],
    )
