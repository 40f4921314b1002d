from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from llm_endpoint_router.cancellation import CancellationToken, run_until_cancelled
from llm_endpoint_router.config import EndpointConfig, ProviderType, RouterConfig
from llm_endpoint_router.errors import (
    EndpointNotFoundError,
    RequestTimeoutError,
    RouterError,
    UpstreamRequestError,
)
from llm_endpoint_router.providers import DirectProviderDispatcher, ProviderRegistry
from llm_endpoint_router.rate_limiter import RateLimiter
from llm_endpoint_router.request_tracker import RequestTracker, TrackedRequest
from llm_endpoint_router.schemas import (
    CompletionChunk,
    CompletionRequest,
    CompletionResponse,
    parse_completion_request,
)
from llm_endpoint_router.streaming import StreamDecoder
from llm_endpoint_router.transforms import ProviderTransform, transform_for

logger = logging.getLogger(__name__)

T = TypeVar("T")

ANTHROPIC_VERSION = "2023-06-01"
MAX_RETRY_DELAY_SECONDS = 30.0

AuditHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RoutingOptions:
    endpoint_id: str | None = None
    # None follows the router's configuration; False forbids the direct path.
    use_direct_provider: bool | None = None
    timeout_seconds: float | None = None
    max_retries: int | None = None
    cancellation: CancellationToken | None = None


def build_headers(endpoint: EndpointConfig) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    api_key = endpoint.resolved_api_key()
    match endpoint.type:
        case ProviderType.ANTHROPIC:
            if api_key:
                headers["x-api-key"] = api_key
            headers["anthropic-version"] = ANTHROPIC_VERSION
        case ProviderType.GEMINI:
            if api_key:
                headers["x-goog-api-key"] = api_key
        case ProviderType.OPENAI | ProviderType.CUSTOM | ProviderType.VERTEX:
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            if endpoint.organization_id:
                headers["OpenAI-Organization"] = endpoint.organization_id
    headers.update(endpoint.headers)
    return headers


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str) and error.strip():
            return error
        if isinstance(body.get("message"), str):
            return body["message"]
    return fallback


def _upstream_error(
    response: httpx.Response, *, provider: str, model: str
) -> UpstreamRequestError:
    try:
        body: Any = response.json()
    except ValueError:
        body = response.text or None
    message = _error_message(
        body, f"Upstream request failed with status {response.status_code}"
    )
    return UpstreamRequestError(
        message,
        status_code=response.status_code,
        details=body,
        provider=provider,
        model=model,
    )


class EndpointRouter:
    """Routes unified chat completions to direct providers or configured endpoints."""

    def __init__(
        self,
        config: RouterConfig,
        *,
        providers: ProviderRegistry | None = None,
        client: httpx.AsyncClient | None = None,
        audit_hook: AuditHook | None = None,
        rate_limiter: RateLimiter | None = None,
        tracker: RequestTracker | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._endpoints: dict[str, EndpointConfig] = dict(config.endpoints)
        self._default_endpoint_id = config.default_endpoint_id
        self._retry_statuses = set(config.retry_statuses)
        self._dispatcher = DirectProviderDispatcher(
            providers, policy=config.direct_fallback_policy
        )
        self._rate_limiter = rate_limiter or RateLimiter(config.requests_per_minute)
        self._tracker = tracker or RequestTracker(
            timeout_seconds=config.request_timeout_seconds,
            sweep_interval_seconds=config.sweep_interval_seconds,
        )
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=5.0,
                read=max(config.request_timeout_seconds, config.stream_timeout_seconds),
                write=30.0,
                pool=5.0,
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )
        self._audit_hook = audit_hook
        self._sleep = sleep
        self._closed = False
        # No loop yet means the sweep starts with the first tracked request.
        self._tracker.start()

    @property
    def providers(self) -> ProviderRegistry:
        return self._dispatcher.registry

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def tracker(self) -> RequestTracker:
        return self._tracker

    # Endpoint administration

    def add_endpoint(
        self, endpoint_id: str, endpoint: EndpointConfig | dict[str, Any]
    ) -> EndpointConfig:
        if not isinstance(endpoint, EndpointConfig):
            endpoint = EndpointConfig.model_validate(endpoint)
        self._endpoints[endpoint_id] = endpoint
        logger.info(
            "router_endpoint_added endpoint=%s type=%s base_url=%s",
            endpoint_id,
            endpoint.type.value,
            endpoint.base_url,
        )
        return endpoint

    def remove_endpoint(self, endpoint_id: str) -> bool:
        if endpoint_id == self._default_endpoint_id and endpoint_id in self._endpoints:
            raise ValueError(
                f"Endpoint '{endpoint_id}' is the default; choose another default first."
            )
        removed = self._endpoints.pop(endpoint_id, None) is not None
        if removed:
            logger.info("router_endpoint_removed endpoint=%s", endpoint_id)
        return removed

    def endpoint_ids(self) -> list[str]:
        return list(self._endpoints)

    def get_endpoint(self, endpoint_id: str | None = None) -> EndpointConfig:
        return self._resolve_endpoint(endpoint_id)[1]

    def set_default_endpoint(self, endpoint_id: str) -> None:
        if endpoint_id not in self._endpoints:
            raise EndpointNotFoundError(endpoint_id, list(self._endpoints))
        self._default_endpoint_id = endpoint_id
        logger.info("router_default_endpoint_changed endpoint=%s", endpoint_id)

    @property
    def default_endpoint_id(self) -> str:
        return self._default_endpoint_id

    def cancel_all_requests(self) -> int:
        return self._tracker.cancel_all("All requests cancelled")

    # Lifecycle

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._tracker.stop()
        self._tracker.cancel_all()
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> EndpointRouter:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Completions

    async def create_chat_completion(
        self,
        request: CompletionRequest | dict[str, Any],
        options: RoutingOptions | None = None,
    ) -> CompletionResponse:
        request = parse_completion_request(request)
        options = options or RoutingOptions()
        await self._throttle(options)

        if self._direct_allowed(options):
            direct = await self._dispatcher.try_chat_completion(request)
            if direct is not None:
                self._audit("router_direct_provider", model=request.model, stream=False)
                return direct

        endpoint_id, endpoint = self._resolve_endpoint(options.endpoint_id)
        transform = transform_for(endpoint.type)
        tracked = self._tracker.track(endpoint_id)
        token = self._call_token(
            tracked, options, self.config.request_timeout_seconds
        )
        started = time.perf_counter()
        try:
            url = self._url(endpoint, transform, request)
            payload = self._provider_payload(request, endpoint, transform)
            headers = build_headers(endpoint)
            body = await self._with_retries(
                lambda: self._post_json(
                    url, payload, headers, token, endpoint_id, endpoint, request
                ),
                token=token,
                endpoint_id=endpoint_id,
                max_retries=self._max_retries(options),
            )
            response = transform.from_provider_response(body, request.model)
            if endpoint.response_transformer is not None:
                response = CompletionResponse.model_validate(
                    endpoint.response_transformer(response.model_dump())
                )
            logger.info(
                "router_completion endpoint=%s model=%s latency_ms=%.2f",
                endpoint_id,
                request.model,
                (time.perf_counter() - started) * 1000.0,
            )
            return response
        except RouterError as exc:
            self._audit_error(exc, endpoint_id, request, stream=False)
            raise
        finally:
            token.dispose()
            tracked.release()

    async def stream_chat_completions(
        self,
        request: CompletionRequest | dict[str, Any],
        options: RoutingOptions | None = None,
    ) -> AsyncIterator[CompletionChunk]:
        request = parse_completion_request(request)
        options = options or RoutingOptions()
        await self._throttle(options)

        if self._direct_allowed(options):
            direct = await self._dispatcher.try_stream_chat_completions(request)
            if direct is not None:
                self._audit("router_direct_provider", model=request.model, stream=True)
                async for chunk in direct:
                    yield chunk
                return

        endpoint_id, endpoint = self._resolve_endpoint(options.endpoint_id)
        request = request.model_copy(update={"stream": True})
        transform = transform_for(endpoint.type)
        tracked = self._tracker.track(endpoint_id)
        token = self._call_token(tracked, options, self.config.stream_timeout_seconds)
        response: httpx.Response | None = None
        chunk_count = 0
        try:
            url = self._url(endpoint, transform, request)
            payload = self._provider_payload(request, endpoint, transform)
            headers = build_headers(endpoint)
            response = await self._with_retries(
                lambda: self._open_stream(
                    url, payload, headers, token, endpoint_id, endpoint, request
                ),
                token=token,
                endpoint_id=endpoint_id,
                max_retries=self._max_retries(options),
            )
            # The timeout bounds connect and headers; the sweep bounds the body.
            token.clear_timeout()
            decoder = StreamDecoder(transform.from_provider_stream_event, request.model)
            chunks = decoder.decode(response.aiter_bytes())
            try:
                while True:
                    chunk = await run_until_cancelled(anext(chunks, None), token)
                    if chunk is None:
                        break
                    if endpoint.response_transformer is not None:
                        chunk = CompletionChunk.model_validate(
                            endpoint.response_transformer(chunk.model_dump())
                        )
                    chunk_count += 1
                    yield chunk
            finally:
                await chunks.aclose()
            self._audit(
                "router_stream_complete",
                endpoint=endpoint_id,
                model=request.model,
                chunks=chunk_count,
                frames_skipped=decoder.frames_skipped,
            )
        except RouterError as exc:
            self._audit_error(exc, endpoint_id, request, stream=True)
            raise
        finally:
            if response is not None:
                await response.aclose()
            token.dispose()
            tracked.release()

    # Internals

    def _resolve_endpoint(self, endpoint_id: str | None) -> tuple[str, EndpointConfig]:
        resolved_id = endpoint_id or self._default_endpoint_id
        endpoint = self._endpoints.get(resolved_id)
        if endpoint is None:
            raise EndpointNotFoundError(resolved_id, list(self._endpoints))
        return resolved_id, endpoint

    def _direct_allowed(self, options: RoutingOptions) -> bool:
        if options.use_direct_provider is False or not len(self.providers):
            return False
        return bool(options.use_direct_provider or self.config.enable_direct_providers)

    async def _throttle(self, options: RoutingOptions) -> None:
        if options.cancellation is None:
            await self._rate_limiter.throttle()
            return
        await run_until_cancelled(self._rate_limiter.throttle(), options.cancellation)

    def _max_retries(self, options: RoutingOptions) -> int:
        if options.max_retries is not None:
            return max(0, options.max_retries)
        return self.config.max_retries

    def _call_token(
        self, tracked: TrackedRequest, options: RoutingOptions, default_timeout: float
    ) -> CancellationToken:
        token = CancellationToken.any(
            options.cancellation, tracked.token, name=tracked.request_id
        )
        timeout = (
            options.timeout_seconds
            if options.timeout_seconds is not None
            else default_timeout
        )
        if timeout and timeout > 0:
            token.cancel_after(timeout)
        return token

    @staticmethod
    def _url(
        endpoint: EndpointConfig, transform: ProviderTransform, request: CompletionRequest
    ) -> str:
        path = endpoint.path or transform.path_for(request)
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{endpoint.base_url}{path}"

    @staticmethod
    def _provider_payload(
        request: CompletionRequest,
        endpoint: EndpointConfig,
        transform: ProviderTransform,
    ) -> dict[str, Any]:
        payload = transform.to_provider_request(request)
        if endpoint.request_transformer is not None:
            payload = endpoint.request_transformer(payload, request)
        return payload

    async def _with_retries(
        self,
        send: Callable[[], Awaitable[T]],
        *,
        token: CancellationToken,
        endpoint_id: str,
        max_retries: int,
    ) -> T:
        attempt = 0
        while True:
            try:
                return await send()
            except UpstreamRequestError as exc:
                if attempt >= max_retries or not self._is_retryable(exc):
                    raise
                delay = self._retry_delay(attempt)
                attempt += 1
                logger.info(
                    "router_retry endpoint=%s attempt=%d/%d status=%d delay_ms=%.0f",
                    endpoint_id,
                    attempt,
                    max_retries,
                    exc.status_code,
                    delay * 1000.0,
                )
            await run_until_cancelled(self._sleep(delay), token)

    def _is_retryable(self, exc: UpstreamRequestError) -> bool:
        if not exc.retryable:
            return False
        if isinstance(exc.__cause__, httpx.TransportError):
            return True
        return exc.status_code in self._retry_statuses

    def _retry_delay(self, attempt: int) -> float:
        base = self.config.retry_base_delay_seconds * (2**attempt)
        return min(base * (0.5 + random.random() * 0.5), MAX_RETRY_DELAY_SECONDS)

    async def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
        token: CancellationToken,
        endpoint_id: str,
        endpoint: EndpointConfig,
        request: CompletionRequest,
    ) -> dict[str, Any]:
        started = time.perf_counter()
        try:
            response = await run_until_cancelled(
                self.client.post(url, json=payload, headers=headers), token
            )
        except httpx.HTTPError as exc:
            raise self._transport_error(exc, endpoint, request) from exc

        self._audit_response(endpoint_id, endpoint, request, response, started)
        if not response.is_success:
            raise _upstream_error(
                response, provider=endpoint.type.value, model=request.model
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamRequestError(
                "Upstream returned a non-JSON body",
                details=response.text[:500],
                provider=endpoint.type.value,
                model=request.model,
            ) from exc
        if not isinstance(body, dict):
            raise UpstreamRequestError(
                "Upstream returned a JSON body that is not an object",
                provider=endpoint.type.value,
                model=request.model,
            )
        return body

    async def _open_stream(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
        token: CancellationToken,
        endpoint_id: str,
        endpoint: EndpointConfig,
        request: CompletionRequest,
    ) -> httpx.Response:
        started = time.perf_counter()
        upstream_request = self.client.build_request(
            "POST",
            url,
            json=payload,
            headers={**headers, "Accept": "text/event-stream"},
        )
        try:
            response = await run_until_cancelled(
                self.client.send(upstream_request, stream=True), token
            )
        except httpx.HTTPError as exc:
            raise self._transport_error(exc, endpoint, request) from exc

        self._audit_response(endpoint_id, endpoint, request, response, started)
        if not response.is_success:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise _upstream_error(
                response, provider=endpoint.type.value, model=request.model
            )
        return response

    @staticmethod
    def _transport_error(
        exc: httpx.HTTPError, endpoint: EndpointConfig, request: CompletionRequest
    ) -> RouterError:
        if isinstance(exc, httpx.TimeoutException):
            return RequestTimeoutError(
                f"Upstream timed out: {exc}",
                provider=endpoint.type.value,
                model=request.model,
            )
        return UpstreamRequestError(
            f"Upstream request failed: {exc}",
            details={"error_type": type(exc).__name__},
            provider=endpoint.type.value,
            model=request.model,
        )

    def _audit_response(
        self,
        endpoint_id: str,
        endpoint: EndpointConfig,
        request: CompletionRequest,
        response: httpx.Response,
        started: float,
    ) -> None:
        self._audit(
            "router_upstream_response",
            endpoint=endpoint_id,
            provider=endpoint.type.value,
            model=request.model,
            status=response.status_code,
            stream=request.stream,
            connect_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )

    def _audit_error(
        self,
        exc: RouterError,
        endpoint_id: str,
        request: CompletionRequest,
        *,
        stream: bool,
    ) -> None:
        logger.warning(
            "router_request_error endpoint=%s model=%s stream=%s error_type=%s "
            "status_code=%d error=%s",
            endpoint_id,
            request.model,
            str(stream).lower(),
            exc.error_type,
            exc.status_code,
            exc.message,
        )
        self._audit(
            "router_request_error",
            endpoint=endpoint_id,
            model=request.model,
            stream=stream,
            error_type=exc.error_type,
            status=exc.status_code,
        )

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)
