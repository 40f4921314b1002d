from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import pytest

from llm_endpoint_router.cancellation import CancellationToken
from llm_endpoint_router.config import RouterConfig
from llm_endpoint_router.errors import (
    EndpointNotFoundError,
    RequestCancelledError,
    RequestTimeoutError,
    UpstreamRequestError,
    ValidationError,
)
from llm_endpoint_router.providers import ProviderRegistry
from llm_endpoint_router.router import EndpointRouter, RoutingOptions, build_headers
from llm_endpoint_router.schemas import CompletionChunk, CompletionResponse
from tests.provider_test_utils import FakeProvider, completion

Handler = Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]]

OPENAI_BODY = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "created": 1700000000,
    "model": "gpt-4o",
    "choices": [
        {
            "index": 0,
            "message": {"role": "assistant", "content": "hi there"},
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
}


def _config(**overrides: Any) -> RouterConfig:
    payload: dict[str, Any] = {
        "default_endpoint_id": "primary",
        "requests_per_minute": 0,
        "retry_base_delay_seconds": 0.001,
        "endpoints": {
            "primary": {
                "base_url": "http://openai.test/v1/",
                "api_key": "sk-test",
                "type": "openai",
                "organization_id": "org-1",
            },
            "claude": {
                "base_url": "http://anthropic.test/v1",
                "api_key": "ak-test",
                "type": "anthropic",
            },
            "gemini": {
                "base_url": "http://gemini.test/v1beta",
                "api_key": "gk-test",
                "type": "gemini",
            },
        },
    }
    payload.update(overrides)
    return RouterConfig.model_validate(payload)


class _Recorder:
    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    @property
    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]


def _router(
    handler: Handler,
    *,
    config: RouterConfig | None = None,
    providers: ProviderRegistry | None = None,
    audit_hook: Callable[[dict[str, Any]], None] | None = None,
    sleeps: list[float] | None = None,
) -> tuple[EndpointRouter, _Recorder]:
    recorder = _Recorder(handler)
    recorded_sleeps = sleeps if sleeps is not None else []

    async def fake_sleep(seconds: float) -> None:
        recorded_sleeps.append(seconds)

    router = EndpointRouter(
        config or _config(),
        providers=providers,
        client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        audit_hook=audit_hook,
        sleep=fake_sleep,
    )
    return router, recorder


def _payload(model: str = "openai/gpt-4o", **extra: Any) -> dict[str, Any]:
    return {"model": model, "messages": [{"role": "user", "content": "hello"}], **extra}


async def _collect(router: EndpointRouter, *args: Any) -> list[CompletionChunk]:
    return [chunk async for chunk in router.stream_chat_completions(*args)]


def test_build_headers_per_provider_type() -> None:
    config = _config()

    openai_headers = build_headers(config.endpoints["primary"])
    assert openai_headers["Authorization"] == "Bearer sk-test"
    assert openai_headers["OpenAI-Organization"] == "org-1"

    anthropic_headers = build_headers(config.endpoints["claude"])
    assert anthropic_headers["x-api-key"] == "ak-test"
    assert anthropic_headers["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in anthropic_headers

    gemini_headers = build_headers(config.endpoints["gemini"])
    assert gemini_headers["x-goog-api-key"] == "gk-test"


def test_build_headers_merges_custom_headers_and_env_key(monkeypatch: Any) -> None:
    monkeypatch.setenv("ROUTER_TEST_KEY", "env-key")
    config = _config(
        endpoints={
            "custom": {
                "base_url": "http://custom.test",
                "api_key_env": "ROUTER_TEST_KEY",
                "type": "custom",
                "headers": {"X-Team": "search"},
            }
        },
        default_endpoint_id="custom",
    )

    headers = build_headers(config.endpoints["custom"])

    assert headers["Authorization"] == "Bearer env-key"
    assert headers["X-Team"] == "search"


def test_create_chat_completion_posts_to_default_endpoint() -> None:
    router, recorder = _router(lambda request: httpx.Response(200, json=OPENAI_BODY))

    response = asyncio.run(router.create_chat_completion(_payload(temperature=0.5)))

    assert isinstance(response, CompletionResponse)
    assert response.text == "hi there"
    assert response.usage.total_tokens == 5
    assert str(recorder.requests[0].url) == "http://openai.test/v1/chat/completions"
    assert recorder.requests[0].headers["authorization"] == "Bearer sk-test"
    assert recorder.bodies[0] == _payload(temperature=0.5)
    assert router.tracker.in_flight == 0


def test_anthropic_endpoint_receives_split_system_prompt() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "id": "msg_1",
                "model": "claude-3-opus-20240229",
                "content": [{"type": "text", "text": "4"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 9, "output_tokens": 1},
            },
        )

    router, recorder = _router(handler)
    response = asyncio.run(
        router.create_chat_completion(
            {
                "model": "anthropic/claude-3-opus-20240229",
                "messages": [
                    {"role": "system", "content": "be terse"},
                    {"role": "user", "content": "2+2?"},
                ],
                "max_tokens": 16,
            },
            RoutingOptions(endpoint_id="claude"),
        )
    )

    request = recorder.requests[0]
    assert str(request.url) == "http://anthropic.test/v1/messages"
    assert request.headers["x-api-key"] == "ak-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    assert recorder.bodies[0] == {
        "model": "claude-3-opus-20240229",
        "system": "be terse",
        "messages": [{"role": "user", "content": "2+2?"}],
        "max_tokens": 16,
    }
    assert response.text == "4"
    assert response.model == "anthropic/claude-3-opus-20240229"
    assert response.choices[0].finish_reason == "stop"
    assert response.usage.total_tokens == 10


def test_gemini_streaming_yields_chunk_per_frame() -> None:
    frames = [
        {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "lo"}]}, "finishReason": "STOP"}]},
    ]
    body = "".join(f"data: {json.dumps(frame)}\n\n" for frame in frames).encode()
    router, recorder = _router(lambda request: httpx.Response(200, content=body))

    chunks = asyncio.run(
        _collect(
            router,
            _payload("google/gemini-1.5-flash"),
            RoutingOptions(endpoint_id="gemini"),
        )
    )

    assert [chunk.choices[0].message.content for chunk in chunks] == ["Hel", "lo"]
    request = recorder.requests[0]
    assert request.url.path == "/v1beta/models/gemini-1.5-flash:streamGenerateContent"
    assert request.url.params["alt"] == "sse"
    assert request.headers["x-goog-api-key"] == "gk-test"
    assert router.tracker.in_flight == 0


def test_validation_error_is_raised_before_any_network_call() -> None:
    router, recorder = _router(lambda request: httpx.Response(200, json=OPENAI_BODY))

    with pytest.raises(ValidationError):
        asyncio.run(router.create_chat_completion({"model": "x", "messages": []}))

    assert recorder.requests == []


def test_unknown_endpoint_raises_not_found() -> None:
    router, recorder = _router(lambda request: httpx.Response(200, json=OPENAI_BODY))

    with pytest.raises(EndpointNotFoundError) as exc_info:
        asyncio.run(
            router.create_chat_completion(
                _payload(), RoutingOptions(endpoint_id="missing")
            )
        )

    assert exc_info.value.status_code == 404
    assert exc_info.value.available == ["claude", "gemini", "primary"]
    assert recorder.requests == []


def test_client_error_is_not_retried() -> None:
    router, recorder = _router(
        lambda request: httpx.Response(
            400, json={"error": {"message": "model not found", "type": "invalid"}}
        ),
        config=_config(max_retries=3),
    )

    with pytest.raises(UpstreamRequestError) as exc_info:
        asyncio.run(router.create_chat_completion(_payload()))

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "model not found"
    assert exc_info.value.details == {
        "error": {"message": "model not found", "type": "invalid"}
    }
    assert len(recorder.requests) == 1
    assert router.tracker.in_flight == 0


def test_retry_statuses_are_retried_until_success() -> None:
    statuses = iter([503, 429, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        if status != 200:
            return httpx.Response(status, json={"error": {"message": "busy"}})
        return httpx.Response(200, json=OPENAI_BODY)

    sleeps: list[float] = []
    router, recorder = _router(handler, config=_config(max_retries=2), sleeps=sleeps)

    response = asyncio.run(router.create_chat_completion(_payload()))

    assert response.text == "hi there"
    assert len(recorder.requests) == 3
    assert len(sleeps) == 2
    assert sleeps[1] > sleeps[0] / 2


def test_retries_stop_at_the_ceiling() -> None:
    router, recorder = _router(
        lambda request: httpx.Response(503, text="unavailable"),
    )

    with pytest.raises(UpstreamRequestError) as exc_info:
        asyncio.run(
            router.create_chat_completion(_payload(), RoutingOptions(max_retries=2))
        )

    assert exc_info.value.status_code == 503
    assert exc_info.value.details == "unavailable"
    assert len(recorder.requests) == 3


def test_transport_errors_are_retried() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json=OPENAI_BODY)

    router, _ = _router(handler, config=_config(max_retries=1))

    response = asyncio.run(router.create_chat_completion(_payload()))

    assert response.text == "hi there"
    assert attempts["count"] == 2


def test_transport_error_without_retries_is_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    router, _ = _router(handler)

    with pytest.raises(UpstreamRequestError) as exc_info:
        asyncio.run(router.create_chat_completion(_payload()))

    assert exc_info.value.status_code == 502


def test_per_call_timeout_aborts_request_and_releases_tracking() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json=OPENAI_BODY)

    router, _ = _router(handler)

    with pytest.raises(RequestTimeoutError) as exc_info:
        asyncio.run(
            router.create_chat_completion(
                _payload(), RoutingOptions(timeout_seconds=0.05)
            )
        )

    assert exc_info.value.status_code == 504
    assert router.tracker.in_flight == 0


def test_caller_cancellation_aborts_in_flight_call() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json=OPENAI_BODY)

    router, _ = _router(handler)

    async def run() -> None:
        token = CancellationToken("caller")
        asyncio.get_running_loop().call_later(0.02, token.cancel)
        await router.create_chat_completion(
            _payload(), RoutingOptions(cancellation=token)
        )

    with pytest.raises(RequestCancelledError):
        asyncio.run(run())
    assert router.tracker.in_flight == 0


def test_tracker_cleanup_aborts_in_flight_call() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json=OPENAI_BODY)

    router, recorder = _router(handler)

    async def run() -> None:
        call = asyncio.ensure_future(router.create_chat_completion(_payload()))
        while not recorder.requests:
            await asyncio.sleep(0.01)
        [record] = router.tracker.snapshot()
        assert router.tracker.cleanup(record["request_id"]) is True
        await call

    with pytest.raises(RequestCancelledError):
        asyncio.run(run())
    assert router.tracker.in_flight == 0


def test_direct_provider_is_preferred_when_registered() -> None:
    events: list[dict[str, Any]] = []
    provider = FakeProvider("openai", response=completion("direct answer"))
    router, recorder = _router(
        lambda request: httpx.Response(200, json=OPENAI_BODY),
        providers=ProviderRegistry({"openai": provider}),
        audit_hook=events.append,
    )

    response = asyncio.run(router.create_chat_completion(_payload()))

    assert response.text == "direct answer"
    assert recorder.requests == []
    assert events[0]["event"] == "router_direct_provider"


def test_direct_provider_failure_falls_back_to_endpoint(caplog: Any) -> None:
    provider = FakeProvider("openai", error=RuntimeError("provider down"))
    router, recorder = _router(
        lambda request: httpx.Response(200, json=OPENAI_BODY),
        providers=ProviderRegistry({"openai": provider}),
    )

    with caplog.at_level(logging.WARNING):
        response = asyncio.run(router.create_chat_completion(_payload()))

    assert response.text == "hi there"
    assert provider.calls == 1
    assert len(recorder.requests) == 1
    assert "direct_provider_failed" in caplog.text


def test_direct_provider_can_be_disabled_per_call() -> None:
    provider = FakeProvider("openai")
    router, recorder = _router(
        lambda request: httpx.Response(200, json=OPENAI_BODY),
        providers=ProviderRegistry({"openai": provider}),
    )

    asyncio.run(
        router.create_chat_completion(
            _payload(), RoutingOptions(use_direct_provider=False)
        )
    )

    assert provider.calls == 0
    assert len(recorder.requests) == 1


def test_direct_streaming_provider_is_used() -> None:
    provider = FakeProvider("openai")
    router, recorder = _router(
        lambda request: httpx.Response(200, content=b""),
        providers=ProviderRegistry({"openai": provider}),
    )

    chunks = asyncio.run(_collect(router, _payload(stream=True)))

    assert [chunk.text for chunk in chunks] == ["from openai"]
    assert recorder.requests == []


def test_streaming_openai_endpoint_sets_stream_flag() -> None:
    body = (
        b'data: {"id":"c","choices":[{"index":0,"delta":{"content":"a"}}]}\n\n'
        b'data: {"id":"c","choices":[{"index":0,"delta":{"content":"b"}}]}\n\n'
        b"data: [DONE]\n\n"
    )
    events: list[dict[str, Any]] = []
    router, recorder = _router(
        lambda request: httpx.Response(200, content=body), audit_hook=events.append
    )

    chunks = asyncio.run(_collect(router, _payload()))

    assert [chunk.text for chunk in chunks] == ["a", "b"]
    assert recorder.bodies[0]["stream"] is True
    assert recorder.requests[0].headers["accept"] == "text/event-stream"
    assert [event["event"] for event in events] == [
        "router_upstream_response",
        "router_stream_complete",
    ]
    assert events[1]["chunks"] == 2


def test_stream_timeout_covers_only_the_time_to_headers() -> None:
    async def slow_body():
        for text in ("a", "b"):
            await asyncio.sleep(0.1)
            frame = {"choices": [{"index": 0, "delta": {"content": text}}]}
            yield f"data: {json.dumps(frame)}\n\n".encode()

    router, _ = _router(
        lambda request: httpx.Response(200, content=slow_body()),
        config=_config(stream_timeout_seconds=0.05),
    )

    chunks = asyncio.run(_collect(router, _payload()))

    assert [chunk.text for chunk in chunks] == ["a", "b"]
    assert router.tracker.in_flight == 0


def test_streaming_upstream_error_is_raised_before_first_chunk() -> None:
    router, _ = _router(
        lambda request: httpx.Response(401, json={"error": {"message": "bad key"}})
    )

    with pytest.raises(UpstreamRequestError) as exc_info:
        asyncio.run(_collect(router, _payload()))

    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "bad key"
    assert router.tracker.in_flight == 0


def test_closing_stream_early_releases_tracked_request() -> None:
    body = b"".join(
        f'data: {{"choices":[{{"delta":{{"content":"{index}"}}}}]}}\n\n'.encode()
        for index in range(5)
    )
    router, _ = _router(lambda request: httpx.Response(200, content=body))

    async def run() -> tuple[str, int]:
        stream = router.stream_chat_completions(_payload())
        first = await anext(stream)
        in_flight = router.tracker.in_flight
        await stream.aclose()
        return first.text, in_flight

    first_text, in_flight_during = asyncio.run(run())

    assert first_text == "0"
    assert in_flight_during == 1
    assert router.tracker.in_flight == 0


def test_request_transformer_override_runs_after_builtin_transform() -> None:
    config = _config()
    primary = config.endpoints["primary"].model_copy(
        update={
            "request_transformer": lambda payload, request: {**payload, "tag": request.model},
            "response_transformer": lambda payload: {**payload, "model": "renamed"},
        }
    )
    router, recorder = _router(lambda request: httpx.Response(200, json=OPENAI_BODY))
    router.add_endpoint("primary", primary)

    response = asyncio.run(router.create_chat_completion(_payload()))

    assert recorder.bodies[0]["tag"] == "openai/gpt-4o"
    assert response.model == "renamed"


def test_failing_audit_hook_is_ignored() -> None:
    def broken_hook(event: dict[str, Any]) -> None:
        raise RuntimeError("sink offline")

    router, _ = _router(
        lambda request: httpx.Response(200, json=OPENAI_BODY), audit_hook=broken_hook
    )

    response = asyncio.run(router.create_chat_completion(_payload()))

    assert response.text == "hi there"


def test_endpoint_administration() -> None:
    router, _ = _router(lambda request: httpx.Response(200, json=OPENAI_BODY))

    router.add_endpoint("backup", {"base_url": "http://backup.test", "type": "openrouter"})
    assert router.endpoint_ids() == ["primary", "claude", "gemini", "backup"]
    assert router.get_endpoint("backup").type.value == "openai"

    router.set_default_endpoint("backup")
    assert router.default_endpoint_id == "backup"

    with pytest.raises(EndpointNotFoundError):
        router.set_default_endpoint("nope")
    with pytest.raises(ValueError):
        router.remove_endpoint("backup")

    assert router.remove_endpoint("primary") is True
    assert router.remove_endpoint("primary") is False


def test_close_cancels_outstanding_requests_and_stops_sweep() -> None:
    router, _ = _router(lambda request: httpx.Response(200, json=OPENAI_BODY))

    async def run() -> tuple[bool, bool]:
        tracked = router.tracker.track("primary")
        running_before = router.tracker.running
        async with router:
            pass
        return running_before, tracked.token.cancelled

    running_before, cancelled = asyncio.run(run())

    assert running_before is True
    assert cancelled is True
    assert router.tracker.running is False
