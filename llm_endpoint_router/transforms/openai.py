"""OpenAI-compatible wire format: a near-identity mapping."""

from __future__ import annotations

import logging
from typing import Any

import pydantic

from llm_endpoint_router.model_utils import OPENAI_MODELS
from llm_endpoint_router.schemas import (
    ChatMessage,
    Choice,
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    Usage,
    new_completion_id,
)
from llm_endpoint_router.transforms._common import (
    as_str,
    coerce_text,
    delta_choice,
    extract_text_content,
)

logger = logging.getLogger(__name__)

_RESPONSE_FIELDS = {"id", "object", "created", "model", "choices", "usage"}

MODELS = OPENAI_MODELS


def request_path(request: CompletionRequest, native_model: str) -> str:
    return "/chat/completions"


def to_provider_request(request: CompletionRequest) -> dict[str, Any]:
    payload = request.model_dump(exclude_none=True)
    payload["model"] = MODELS.to_provider(request.model)
    if not request.stream:
        payload.pop("stream", None)
    return payload


def _tool_calls(value: Any) -> list[dict[str, Any]] | None:
    if not isinstance(value, list):
        return None
    calls = [call for call in value if isinstance(call, dict)]
    return calls or None


def _message(raw: Any) -> ChatMessage:
    if not isinstance(raw, dict):
        return ChatMessage(role="assistant", content="")
    data = {key: value for key, value in raw.items() if value is not None}
    data["role"] = as_str(data.get("role"), "assistant")
    content = data.get("content", "")
    data["content"] = content if isinstance(content, (str, list)) else coerce_text(content)
    for key in ("name", "tool_call_id"):
        if key in data and not isinstance(data[key], str):
            data[key] = coerce_text(data[key])
    tool_calls = _tool_calls(data.pop("tool_calls", None))
    if tool_calls is not None:
        data["tool_calls"] = tool_calls
    try:
        return ChatMessage.model_validate(data)
    except pydantic.ValidationError as exc:
        logger.warning("openai_message_unreadable error_count=%d", exc.error_count())
        return ChatMessage(role=data["role"], content=extract_text_content(data["content"]))


def _created(payload: dict[str, Any]) -> dict[str, Any]:
    created = payload.get("created")
    return {"created": created} if isinstance(created, int) else {}


def from_provider_response(payload: dict[str, Any], model: str) -> CompletionResponse:
    choices: list[Choice] = []
    for position, raw_choice in enumerate(payload.get("choices") or []):
        if not isinstance(raw_choice, dict):
            continue
        index = raw_choice.get("index")
        choices.append(
            Choice(
                index=index if isinstance(index, int) else position,
                message=_message(raw_choice.get("message")),
                finish_reason=as_str(raw_choice.get("finish_reason")) or None,
            )
        )
    usage = payload.get("usage")
    extras = {
        key: value
        for key, value in payload.items()
        if key not in _RESPONSE_FIELDS and value is not None
    }
    upstream_model = as_str(payload.get("model"))
    return CompletionResponse(
        id=as_str(payload.get("id")) or new_completion_id(),
        model=MODELS.to_unified(upstream_model) if upstream_model else model,
        choices=choices,
        usage=Usage.model_validate(usage) if isinstance(usage, dict) else Usage(),
        **_created(payload),
        **extras,
    )


def from_provider_stream_event(
    event: dict[str, Any], model: str
) -> CompletionChunk | None:
    choices = []
    for position, raw_choice in enumerate(event.get("choices") or []):
        if not isinstance(raw_choice, dict):
            continue
        delta = raw_choice.get("delta")
        if not isinstance(delta, dict):
            delta = raw_choice.get("message")
        if not isinstance(delta, dict):
            delta = {}
        index = raw_choice.get("index")
        tool_calls = delta.get("tool_calls")
        choices.append(
            delta_choice(
                as_str(delta.get("content")),
                as_str(raw_choice.get("finish_reason")) or None,
                role=as_str(delta.get("role"), "assistant"),
                tool_calls=_tool_calls(tool_calls),
                index=index if isinstance(index, int) else position,
            )
        )
    usage = event.get("usage")
    upstream_model = as_str(event.get("model"))
    return CompletionChunk(
        id=as_str(event.get("id")) or new_completion_id(),
        model=MODELS.to_unified(upstream_model) if upstream_model else model,
        choices=choices,
        usage=Usage.model_validate(usage) if isinstance(usage, dict) else None,
        **_created(event),
    )
