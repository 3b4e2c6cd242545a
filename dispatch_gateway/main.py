from __future__ import annotations

import logging
from datetime import datetime, timezone
from html import escape
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response

from dispatch_gateway.dispatcher import DispatchController
from dispatch_gateway.headers import FAST_PATH_MODE, cors_headers
from dispatch_gateway.long_path import LONG_PATH_ROUTE, LongPathExecutor
from dispatch_gateway.registry import ProviderRegistry, load_provider_registry
from dispatch_gateway.settings import Settings, get_settings

SERVICE_NAME = "llm-dispatch-gateway"
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

app = FastAPI(
    title="LLM Dispatch Gateway",
    description="Dispatch proxy for LLM provider APIs with fast and long execution paths.",
    version="1.0.0",
)

logger = logging.getLogger("uvicorn.error")


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    logger.setLevel(settings.log_level_value)
    registry = load_provider_registry(settings)
    app.state.settings = settings
    app.state.registry = registry
    app.state.dispatcher = DispatchController(settings=settings, registry=registry)
    app.state.long_path_executor = LongPathExecutor(
        settings=settings, registry=registry
    )
    logger.info(
        (
            "startup complete providers=%d prefix=%s fast_path_timeout_ms=%d "
            "long_path_timeout_ms=%d retry=%s fallback=%s"
        ),
        len(registry),
        settings.normalized_prefix,
        settings.fast_path_timeout_ms,
        settings.long_path_timeout_ms,
        settings.enable_retry,
        settings.enable_fallback,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    dispatcher: DispatchController | None = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.close()
    long_path_executor: LongPathExecutor | None = getattr(
        app.state, "long_path_executor", None
    )
    if long_path_executor is not None:
        await long_path_executor.close()
    logger.info("shutdown complete")


def _health_payload(settings: Settings) -> dict[str, Any]:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
        "mode": FAST_PATH_MODE,
        "version": settings.gateway_version,
        "env": settings.environment,
    }


def _health_response() -> JSONResponse:
    settings: Settings = app.state.settings
    return JSONResponse(
        content=_health_payload(settings),
        headers=cors_headers(settings.allowed_origin),
    )


def _welcome_page(settings: Settings, registry: ProviderRegistry) -> str:
    prefix = escape(settings.normalized_prefix)
    items = "\n".join(
        f"      <li><code>{prefix}/{escape(alias)}/</code></li>"
        for alias in sorted(registry.aliases())
    )
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "  <head><meta charset=\"utf-8\"><title>LLM Dispatch Gateway</title></head>\n"
        "  <body>\n"
        "    <h1>LLM Dispatch Gateway</h1>\n"
        f"    <p>Send requests to <code>{prefix}/{{provider}}/{{path}}</code>.</p>\n"
        "    <ul>\n"
        f"{items}\n"
        "    </ul>\n"
        "  </body>\n"
        "</html>\n"
    )


@app.get("/", response_class=HTMLResponse)
async def welcome() -> HTMLResponse:
    return HTMLResponse(_welcome_page(app.state.settings, app.state.registry))


@app.get("/health")
async def health() -> JSONResponse:
    return _health_response()


@app.api_route(LONG_PATH_ROUTE + "/{alias}", methods=ALL_METHODS)
@app.api_route(LONG_PATH_ROUTE + "/{alias}/{path:path}", methods=ALL_METHODS)
async def long_path(request: Request, alias: str, path: str = "") -> Response:
    executor: LongPathExecutor = app.state.long_path_executor
    return await executor.handle(request, alias)


@app.api_route("/{full_path:path}", methods=ALL_METHODS)
async def gateway(request: Request, full_path: str) -> Response:
    settings: Settings = app.state.settings
    health_path = f"{settings.normalized_prefix}/health"
    if request.method == "GET" and request.url.path == health_path:
        return _health_response()
    dispatcher: DispatchController = app.state.dispatcher
    return await dispatcher.dispatch(request)


def run() -> None:
    import uvicorn

    uvicorn.run("dispatch_gateway.main:app", host="0.0.0.0", port=8000, reload=False)
