from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest

from llm_endpoint_router.config import DirectFallbackPolicy
from llm_endpoint_router.errors import ValidationError
from llm_endpoint_router.providers import (
    ChatProvider,
    DirectProviderDispatcher,
    ProviderRegistry,
)
from llm_endpoint_router.schemas import (
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
)
from tests.provider_test_utils import FakeProvider, chunk, completion


def _request(model: str = "openai/gpt-4o") -> CompletionRequest:
    return CompletionRequest.model_validate(
        {"model": model, "messages": [{"role": "user", "content": "hi"}]}
    )


def test_fake_provider_satisfies_protocol() -> None:
    assert isinstance(FakeProvider("openai"), ChatProvider)


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("openai/gpt-4o", "openai"),
        ("google/gemini-1.5-pro", "gemini"),
        ("google-vertex/text-bison", "vertex"),
        ("anthropic/claude-3-opus-20240229", "anthropic"),
        ("mistralai/mistral-large", "mistral"),
        ("meta-llama/llama-3-70b", "together"),
        ("together/mixtral", "together"),
    ],
)
def test_find_provider_for_model_uses_prefix_table(model: str, expected: str) -> None:
    registry = ProviderRegistry()
    for key in ("openai", "gemini", "vertex", "anthropic", "mistral", "together"):
        registry.register(key, FakeProvider(key))

    provider = registry.find_provider_for_model(model)

    assert provider is not None
    assert provider.name == expected


def test_find_provider_for_model_falls_back_to_model_mapping() -> None:
    registry = ProviderRegistry()
    registry.register("local", FakeProvider("local", mapped={"custom/model": "model"}))

    provider = registry.find_provider_for_model("custom/model")

    assert provider is not None and provider.name == "local"
    assert registry.find_provider_for_model("unknown/model") is None


def test_prefix_without_registered_provider_is_skipped() -> None:
    registry = ProviderRegistry({"anthropic": FakeProvider("anthropic")})

    assert registry.find_provider_for_model("openai/gpt-4o") is None


def test_registry_normalises_keys_given_to_constructor() -> None:
    registry = ProviderRegistry({" Anthropic ": FakeProvider("anthropic")})

    provider = registry.find_provider_for_model("anthropic/claude-3-opus-20240229")

    assert provider is not None and provider.name == "anthropic"
    assert registry.keys() == ["anthropic"]
    assert registry.has("ANTHROPIC")


def test_disabled_dispatcher_never_finds_a_provider() -> None:
    dispatcher = DirectProviderDispatcher(
        ProviderRegistry({"openai": FakeProvider("openai")}), enabled=False
    )

    assert dispatcher.find_provider_for_model("openai/gpt-4o") is None
    assert asyncio.run(dispatcher.try_chat_completion(_request())) is None


def test_try_chat_completion_returns_provider_response() -> None:
    provider = FakeProvider("openai", response=completion("direct"))
    dispatcher = DirectProviderDispatcher(ProviderRegistry({"openai": provider}))

    response = asyncio.run(dispatcher.try_chat_completion(_request()))

    assert response is not None and response.text == "direct"
    assert provider.calls == 1


def test_try_chat_completion_swallows_failure_and_logs(caplog: Any) -> None:
    provider = FakeProvider("openai", error=RuntimeError("provider down"))
    dispatcher = DirectProviderDispatcher(ProviderRegistry({"openai": provider}))

    with caplog.at_level(logging.WARNING):
        response = asyncio.run(dispatcher.try_chat_completion(_request()))

    assert response is None
    assert "direct_provider_failed" in caplog.text


def test_upstream_only_policy_reraises_programming_errors() -> None:
    dispatcher = DirectProviderDispatcher(
        ProviderRegistry(
            {"openai": FakeProvider("openai", error=ValidationError("bad request"))}
        ),
        policy=DirectFallbackPolicy.UPSTREAM_ONLY,
    )

    with pytest.raises(ValidationError):
        asyncio.run(dispatcher.try_chat_completion(_request()))


def test_upstream_only_policy_recovers_transport_errors() -> None:
    dispatcher = DirectProviderDispatcher(
        ProviderRegistry(
            {"openai": FakeProvider("openai", error=httpx.ConnectError("refused"))}
        ),
        policy=DirectFallbackPolicy.UPSTREAM_ONLY,
    )

    assert asyncio.run(dispatcher.try_chat_completion(_request())) is None


async def _drain(stream: AsyncIterator[CompletionChunk] | None) -> list[str] | None:
    if stream is None:
        return None
    return [item.text async for item in stream]


def test_try_stream_returns_all_chunks() -> None:
    provider = FakeProvider("openai", chunks=[chunk("a"), chunk("b")])
    dispatcher = DirectProviderDispatcher(ProviderRegistry({"openai": provider}))

    async def run() -> list[str] | None:
        return await _drain(await dispatcher.try_stream_chat_completions(_request()))

    assert asyncio.run(run()) == ["a", "b"]


def test_try_stream_failure_before_first_chunk_falls_back() -> None:
    provider = FakeProvider("openai", chunks=[], error=RuntimeError("no stream"))
    dispatcher = DirectProviderDispatcher(ProviderRegistry({"openai": provider}))

    async def run() -> list[str] | None:
        return await _drain(await dispatcher.try_stream_chat_completions(_request()))

    assert asyncio.run(run()) is None


def test_try_stream_failure_after_first_chunk_propagates() -> None:
    provider = FakeProvider("openai", chunks=[chunk("a")], error=RuntimeError("cut"))
    dispatcher = DirectProviderDispatcher(ProviderRegistry({"openai": provider}))

    async def run() -> list[str] | None:
        return await _drain(await dispatcher.try_stream_chat_completions(_request()))

    with pytest.raises(RuntimeError, match="cut"):
        asyncio.run(run())


def test_try_stream_with_empty_provider_stream_is_empty() -> None:
    provider = FakeProvider("openai", chunks=[])
    dispatcher = DirectProviderDispatcher(ProviderRegistry({"openai": provider}))

    async def run() -> list[str] | None:
        return await _drain(await dispatcher.try_stream_chat_completions(_request()))

    assert asyncio.run(run()) == []


def test_completion_helper_builds_unified_response() -> None:
    assert isinstance(completion("x"), CompletionResponse)
