"""Direct provider integrations consulted before the configured endpoints."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

import httpx

from llm_endpoint_router.config import DirectFallbackPolicy
from llm_endpoint_router.errors import RouterError, ValidationError
from llm_endpoint_router.schemas import (
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
)

logger = logging.getLogger(__name__)

# Checked in order; the first prefix whose provider is registered wins.
MODEL_PREFIX_PROVIDERS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("openai/",), "openai"),
    (("google/gemini",), "gemini"),
    (("google-vertex/",), "vertex"),
    (("anthropic/",), "anthropic"),
    (("mistralai/",), "mistral"),
    (("meta-llama/", "together/"), "together"),
)


@runtime_checkable
class ChatProvider(Protocol):
    name: str

    async def create_chat_completion(
        self, request: CompletionRequest
    ) -> CompletionResponse: ...

    def stream_chat_completions(
        self, request: CompletionRequest
    ) -> AsyncIterator[CompletionChunk]: ...

    def map_to_provider_model(self, model_id: str) -> str: ...


class ProviderRegistry:
    def __init__(self, providers: dict[str, ChatProvider] | None = None) -> None:
        self._providers: dict[str, ChatProvider] = {}
        for key, provider in (providers or {}).items():
            self.register(key, provider)

    def register(self, key: str, provider: ChatProvider) -> None:
        self._providers[key.strip().lower()] = provider

    def unregister(self, key: str) -> bool:
        return self._providers.pop(key.strip().lower(), None) is not None

    def get(self, key: str) -> ChatProvider | None:
        return self._providers.get(key.strip().lower())

    def has(self, key: str) -> bool:
        return key.strip().lower() in self._providers

    def keys(self) -> list[str]:
        return list(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    def find_provider_for_model(self, model_id: str) -> ChatProvider | None:
        for prefixes, key in MODEL_PREFIX_PROVIDERS:
            if model_id.startswith(prefixes) and key in self._providers:
                return self._providers[key]

        for provider in self._providers.values():
            mapped = provider.map_to_provider_model(model_id)
            if mapped and mapped != model_id:
                return provider
        return None


def _is_upstream_failure(exc: Exception) -> bool:
    if isinstance(exc, ValidationError):
        return False
    return isinstance(exc, (RouterError, httpx.HTTPError, OSError, TimeoutError))


class DirectProviderDispatcher:
    """Tries a direct provider and reports ``None`` so the caller can fall back.

    Which failures are recovered is governed by ``policy``; failures outside
    the policy propagate unchanged.
    """

    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        *,
        enabled: bool = True,
        policy: DirectFallbackPolicy = DirectFallbackPolicy.ANY_ERROR,
    ) -> None:
        self.registry = registry or ProviderRegistry()
        self.enabled = enabled
        self.policy = policy

    def find_provider_for_model(self, model_id: str) -> ChatProvider | None:
        if not self.enabled or not len(self.registry):
            return None
        try:
            return self.registry.find_provider_for_model(model_id)
        except Exception as exc:
            logger.warning(
                "direct_provider_lookup_failed model=%s error=%s", model_id, exc
            )
            return None

    async def try_chat_completion(
        self, request: CompletionRequest
    ) -> CompletionResponse | None:
        provider = self.find_provider_for_model(request.model)
        if provider is None:
            return None

        logger.info(
            "direct_provider_selected provider=%s model=%s",
            provider.name,
            request.model,
        )
        try:
            return await provider.create_chat_completion(request)
        except Exception as exc:
            self._recover(exc, provider, request, streaming=False)
            return None

    async def try_stream_chat_completions(
        self, request: CompletionRequest
    ) -> AsyncIterator[CompletionChunk] | None:
        """Return the provider's stream once its first chunk has arrived.

        A failure before the first chunk is recoverable. Later failures
        propagate to whoever consumes the returned iterator.
        """
        provider = self.find_provider_for_model(request.model)
        if provider is None:
            return None

        logger.info(
            "direct_provider_selected provider=%s model=%s stream=true",
            provider.name,
            request.model,
        )
        stream: AsyncIterator[CompletionChunk] | None = None
        try:
            stream = provider.stream_chat_completions(request)
            first = await anext(stream)
        except StopAsyncIteration:
            return _empty_stream()
        except Exception as exc:
            if stream is not None:
                await _close_quietly(stream)
            self._recover(exc, provider, request, streaming=True)
            return None
        return _prepend(first, stream)

    def _recover(
        self,
        exc: Exception,
        provider: ChatProvider,
        request: CompletionRequest,
        *,
        streaming: bool,
    ) -> None:
        if self.policy is DirectFallbackPolicy.UPSTREAM_ONLY and not _is_upstream_failure(
            exc
        ):
            raise exc
        logger.warning(
            "direct_provider_failed provider=%s model=%s stream=%s error=%s "
            "fallback=endpoint",
            provider.name,
            request.model,
            str(streaming).lower(),
            exc,
        )


async def _prepend(
    first: CompletionChunk, rest: AsyncIterator[CompletionChunk]
) -> AsyncIterator[CompletionChunk]:
    try:
        yield first
        async for chunk in rest:
            yield chunk
    finally:
        await _close_quietly(rest)


async def _empty_stream() -> AsyncIterator[CompletionChunk]:
    return
    yield


async def _close_quietly(stream: AsyncIterator[CompletionChunk]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:
        logger.debug("direct_provider_stream_close_failed error=%s", exc)
