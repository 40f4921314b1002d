from __future__ import annotations

import time
import uuid
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator

from llm_endpoint_router.errors import ValidationError

VALID_ROLES = ("system", "user", "assistant", "tool")


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: str | list[Any] | None = None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None


class CompletionRequest(BaseModel):
    """Provider-agnostic chat completion request.

    Unknown fields are kept so OpenAI-compatible endpoints receive them 1:1.
    """

    model_config = ConfigDict(extra="allow")

    model: str = ""
    messages: list[ChatMessage] = Field(default_factory=list)
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    stop: list[str] | None = None
    seed: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    response_format: dict[str, Any] | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: Any = None
    user: str | None = None
    stream: bool = False

    @model_validator(mode="before")
    @classmethod
    def _coerce_stop(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if "stop" not in data and "additional_stop_sequences" in data:
            data = dict(data)
            data["stop"] = data.pop("additional_stop_sequences")
        stop = data.get("stop")
        if isinstance(stop, str):
            data = dict(data)
            data["stop"] = [stop]
        return data

    def namespace(self) -> str | None:
        provider, sep, _ = self.model.partition("/")
        if sep and provider.strip():
            return provider.strip().lower()
        return None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @model_validator(mode="before")
    @classmethod
    def _coerce_counts(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {
            name: _as_token_count(data.get(name))
            for name in ("prompt_tokens", "completion_tokens", "total_tokens")
        }

    @model_validator(mode="after")
    def _total_is_sum(self) -> Usage:
        # A bare total is kept when the parts are unknown.
        if self.prompt_tokens or self.completion_tokens:
            self.total_tokens = self.prompt_tokens + self.completion_tokens
        return self

    @classmethod
    def from_counts(cls, prompt: Any, completion: Any) -> Usage:
        return cls(
            prompt_tokens=_as_token_count(prompt),
            completion_tokens=_as_token_count(completion),
        )


class Choice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    message: ChatMessage = Field(
        default_factory=lambda: ChatMessage(role="assistant", content="")
    )
    finish_reason: str | None = None


class CompletionResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: new_completion_id())
    object: str = "chat.completion"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str = ""
    choices: list[Choice] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)

    @model_validator(mode="before")
    @classmethod
    def _fill_missing(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        # Upstreams send explicit nulls; treat them as absent.
        return {key: value for key, value in data.items() if value is not None}

    @property
    def text(self) -> str:
        if not self.choices:
            return ""
        content = self.choices[0].message.content
        return content if isinstance(content, str) else ""


class ChunkChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    message: ChatMessage = Field(
        default_factory=lambda: ChatMessage(role="assistant", content="")
    )
    finish_reason: str | None = None


class CompletionChunk(BaseModel):
    """One partial response of a streamed completion."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: new_completion_id())
    object: str = "chat.completion.chunk"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str = ""
    choices: list[ChunkChoice] = Field(default_factory=list)
    usage: Usage | None = None

    @property
    def text(self) -> str:
        if not self.choices:
            return ""
        content = self.choices[0].message.content
        return content if isinstance(content, str) else ""


def new_completion_id(prefix: str = "chatcmpl") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:24]}"


def _as_token_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value))
    return 0


def _content_is_empty(content: Any) -> bool:
    if isinstance(content, str):
        return not content.strip()
    if isinstance(content, list):
        return len(content) == 0
    return True


def validate_completion_request(request: CompletionRequest) -> None:
    """Raise ValidationError listing every problem found in ``request``."""
    errors: list[str] = []

    if not request.model or not request.model.strip():
        errors.append("model is required")

    if not request.messages:
        errors.append("messages must be a non-empty array")
    for index, message in enumerate(request.messages):
        if message.role not in VALID_ROLES:
            errors.append(
                f"message[{index}].role must be one of {', '.join(VALID_ROLES)}"
            )
        if message.role == "assistant" and message.tool_calls:
            continue
        if _content_is_empty(message.content):
            errors.append(
                f"message[{index}].content must be a non-empty string or list of parts"
            )

    if request.max_tokens is not None and request.max_tokens < 1:
        errors.append("max_tokens must be a positive integer")
    if request.temperature is not None and not 0 <= request.temperature <= 2:
        errors.append("temperature must be a number between 0 and 2")
    if request.top_p is not None and not 0 <= request.top_p <= 1:
        errors.append("top_p must be a number between 0 and 1")
    if request.top_k is not None and request.top_k < 1:
        errors.append("top_k must be a positive integer")
    for name in ("frequency_penalty", "presence_penalty"):
        value = getattr(request, name)
        if value is not None and not -2 <= value <= 2:
            errors.append(f"{name} must be a number between -2 and 2")

    if errors:
        raise ValidationError("Invalid completion request", errors)


def parse_completion_request(
    payload: CompletionRequest | dict[str, Any],
) -> CompletionRequest:
    """Coerce ``payload`` into a validated CompletionRequest."""
    if isinstance(payload, CompletionRequest):
        request = payload
    elif isinstance(payload, dict):
        try:
            request = CompletionRequest.model_validate(payload)
        except pydantic.ValidationError as exc:
            problems = [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            ]
            raise ValidationError("Invalid completion request", problems) from exc
    else:
        raise ValidationError(
            "Invalid completion request",
            [f"expected an object, got {type(payload).__name__}"],
        )
    validate_completion_request(request)
    return request
