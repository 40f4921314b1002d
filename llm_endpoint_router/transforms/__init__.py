from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, assert_never

from llm_endpoint_router.config import ProviderType
from llm_endpoint_router.model_utils import ModelIdMap
from llm_endpoint_router.schemas import (
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
)
from llm_endpoint_router.transforms import anthropic, gemini, openai, vertex


@dataclass(frozen=True, slots=True)
class ProviderTransform:
    """The request/response translation for one provider wire format."""

    provider_type: ProviderType
    models: ModelIdMap
    request_path: Callable[[CompletionRequest, str], str]
    to_provider_request: Callable[[CompletionRequest], dict[str, Any]]
    from_provider_response: Callable[[dict[str, Any], str], CompletionResponse]
    from_provider_stream_event: Callable[
        [dict[str, Any], str], CompletionChunk | None
    ]

    def path_for(self, request: CompletionRequest) -> str:
        return self.request_path(request, self.models.to_provider(request.model))


def _from_module(provider_type: ProviderType, module: Any) -> ProviderTransform:
    return ProviderTransform(
        provider_type=provider_type,
        models=module.MODELS,
        request_path=module.request_path,
        to_provider_request=module.to_provider_request,
        from_provider_response=module.from_provider_response,
        from_provider_stream_event=module.from_provider_stream_event,
    )


def transform_for(provider_type: ProviderType) -> ProviderTransform:
    match provider_type:
        case ProviderType.OPENAI | ProviderType.CUSTOM:
            return _from_module(provider_type, openai)
        case ProviderType.ANTHROPIC:
            return _from_module(provider_type, anthropic)
        case ProviderType.GEMINI:
            return _from_module(provider_type, gemini)
        case ProviderType.VERTEX:
            return _from_module(provider_type, vertex)
        case _:
            assert_never(provider_type)


__all__ = ["ProviderTransform", "transform_for"]
