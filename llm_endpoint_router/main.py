from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from llm_endpoint_router.audit import AuditLog, fan_out, log_event
from llm_endpoint_router.config import load_router_config
from llm_endpoint_router.errors import RouterError, ValidationError
from llm_endpoint_router.router import EndpointRouter, RoutingOptions
from llm_endpoint_router.schemas import CompletionChunk
from llm_endpoint_router.settings import Settings, get_settings

app = FastAPI(
    title="LLM Endpoint Router",
    description="Unified chat-completion API routed to configured LLM providers.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

ENDPOINT_HEADER = "x-router-endpoint"


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, settings.http_connect_timeout_seconds),
            read=max(0.1, settings.http_read_timeout_seconds),
            write=max(0.1, settings.http_write_timeout_seconds),
            pool=max(0.1, settings.http_pool_timeout_seconds),
        ),
        limits=httpx.Limits(
            max_connections=settings.http_max_connections,
            max_keepalive_connections=settings.http_max_keepalive_connections,
        ),
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    logging.getLogger("llm_endpoint_router").setLevel(settings.log_level.upper())
    router_config = load_router_config(settings.router_config_path)

    sinks = [log_event]
    audit_log: AuditLog | None = None
    if settings.router_audit_log_enabled:
        audit_log = AuditLog(settings.router_audit_log_path)
        sinks.append(audit_log.record)

    app.state.settings = settings
    app.state.audit_log = audit_log
    app.state.router = EndpointRouter(
        router_config,
        client=build_http_client(settings),
        audit_hook=fan_out(sinks),
    )
    logger.info(
        "startup complete router_config_path=%s endpoints=%d default_endpoint=%s "
        "requests_per_minute=%d audit_log_enabled=%s",
        settings.router_config_path,
        len(router_config.endpoints),
        router_config.default_endpoint_id,
        router_config.requests_per_minute,
        settings.router_audit_log_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    router: EndpointRouter | None = getattr(app.state, "router", None)
    if router is not None:
        await router.close()
        await router.client.aclose()
    audit_log: AuditLog | None = getattr(app.state, "audit_log", None)
    if audit_log is not None:
        audit_log.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    router: EndpointRouter = app.state.router
    return {"status": "ok", "in_flight": router.tracker.in_flight}


@app.get("/v1/endpoints")
async def endpoints() -> dict[str, Any]:
    router: EndpointRouter = app.state.router
    return {
        "default_endpoint_id": router.default_endpoint_id,
        "endpoints": {
            endpoint_id: router.get_endpoint(endpoint_id).public_view()
            for endpoint_id in router.endpoint_ids()
        },
    }


def _sse(data: dict[str, Any]) -> bytes:
    encoded = json.dumps(data, separators=(",", ":"), default=str)
    return f"data: {encoded}\n\n".encode("utf-8")


async def _sse_stream(
    first: CompletionChunk, rest: AsyncIterator[CompletionChunk]
) -> AsyncIterator[bytes]:
    try:
        yield _sse(first.model_dump(exclude_none=True))
        async for chunk in rest:
            yield _sse(chunk.model_dump(exclude_none=True))
    except RouterError as exc:
        # Headers are already sent; report the failure in-band.
        logger.warning(
            "stream_aborted error_type=%s status_code=%d error=%s",
            exc.error_type,
            exc.status_code,
            exc.message,
        )
        yield _sse(exc.to_dict())
    finally:
        await rest.aclose()
    yield b"data: [DONE]\n\n"


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError("Expected a JSON body", [str(exc)]) from exc
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object request body")

    router: EndpointRouter = app.state.router
    options = RoutingOptions(endpoint_id=request.headers.get(ENDPOINT_HEADER) or None)

    if not payload.get("stream"):
        response = await router.create_chat_completion(payload, options)
        return JSONResponse(content=response.model_dump(exclude_none=True))

    chunks = router.stream_chat_completions(payload, options)
    # Pull the first chunk so routing errors still produce a proper status code.
    first = await anext(chunks, None)
    if first is None:
        await chunks.aclose()
        return StreamingResponse(
            iter([b"data: [DONE]\n\n"]), media_type="text/event-stream"
        )
    return StreamingResponse(
        _sse_stream(first, chunks),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@app.exception_handler(RouterError)
async def router_error_handler(_: Request, exc: RouterError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(FileNotFoundError)
async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "llm_endpoint_router.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
