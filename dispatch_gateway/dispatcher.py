from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from dispatch_gateway.errors import (
    GatewayError,
    InvalidPathError,
    LongPathUnavailableError,
    ResponseSizeExceededError,
    UnknownProviderError,
    UpstreamServerError,
    UpstreamTimeoutError,
    classify_error,
    error_response,
)
from dispatch_gateway.executor import (
    Deadline,
    RetryPolicy,
    UpstreamExecutor,
    build_http_client,
)
from dispatch_gateway.governor import (
    SizeLimitedStream,
    check_declared_length,
    read_limited,
)
from dispatch_gateway.headers import (
    FAST_PATH_MODE,
    LONG_PATH_MODE,
    LONG_PATH_SECRET_HEADER,
    NO_CACHE,
    ORIGINAL_IP_HEADER,
    PROCESSING_MODE_HEADER,
    PROVIDER_DESCRIPTOR_HEADER,
    REQUEST_ID_HEADER,
    build_upstream_url,
    diagnostic_headers,
    extract_client_ip,
    extract_request_id,
    filter_response_headers,
    merge_headers,
    sanitize_path,
    sanitize_request_headers,
)
from dispatch_gateway.long_path import (
    BODYLESS_METHODS,
    LONG_PATH_ROUTE,
    ProviderDescriptor,
)
from dispatch_gateway.registry import ProviderProfile, ProviderRegistry
from dispatch_gateway.routing import decide_route
from dispatch_gateway.settings import Settings

EXAMPLE_PROVIDER_PATH = "openai/v1/chat/completions"

# Failures of the forwarding call that hand the request back to the fast path.
LONG_PATH_FAILURES = (
    LongPathUnavailableError,
    UpstreamTimeoutError,
    ResponseSizeExceededError,
    httpx.HTTPError,
)
FAST_PATH_FAILURES = (
    UpstreamServerError,
    UpstreamTimeoutError,
    ResponseSizeExceededError,
    httpx.HTTPError,
)

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class RequestContext:
    request_id: str
    method: str
    path: str
    client_ip: str
    provider_alias: str = ""
    start_time: float = field(default_factory=time.perf_counter)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000.0


def split_dispatch_path(path: str, prefix: str) -> list[str]:
    if prefix and (path == prefix or path.startswith(f"{prefix}/")):
        path = path[len(prefix) :]
    return [segment for segment in path.split("/") if segment]


class DispatchController:
    def __init__(
        self,
        *,
        settings: Settings,
        registry: ProviderRegistry,
        client: httpx.AsyncClient | None = None,
        executor: UpstreamExecutor | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self.client = client or build_http_client(settings)
        self._executor = executor or UpstreamExecutor(client_getter=lambda: self.client)

    async def close(self) -> None:
        await self.client.aclose()

    def _example_path(self) -> str:
        return f"{self._settings.normalized_prefix}/{EXAMPLE_PROVIDER_PATH}"

    def resolve(self, path: str) -> tuple[ProviderProfile, str]:
        segments = split_dispatch_path(path, self._settings.normalized_prefix)
        if len(segments) < 2:
            raise InvalidPathError(
                "Invalid path format. Expected: "
                f"{self._settings.normalized_prefix}/{{provider}}/{{path}}",
                details={
                    "available_providers": self._registry.aliases(),
                    "example": self._example_path(),
                },
            )
        alias = segments[0]
        profile = self._registry.lookup(alias)
        if profile is None:
            raise UnknownProviderError(alias, self._registry.aliases())
        return profile, sanitize_path(segments[1:])

    def _diagnostics(self, ctx: RequestContext, mode: str) -> dict[str, str]:
        return diagnostic_headers(
            request_id=ctx.request_id,
            mode=mode,
            processing_time_ms=ctx.elapsed_ms(),
            allowed_origin=self._settings.allowed_origin,
        )

    def _fast_path_headers(self, ctx: RequestContext) -> dict[str, str]:
        return {
            **self._diagnostics(ctx, FAST_PATH_MODE),
            "X-Gateway-Version": self._settings.gateway_version,
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Cache-Control": NO_CACHE,
            "X-Accel-Buffering": "no",
        }

    def _error(
        self,
        ctx: RequestContext,
        *,
        status_code: int,
        message: str,
        error_type: str,
        mode: str = FAST_PATH_MODE,
        extra: dict[str, Any] | None = None,
    ) -> JSONResponse:
        return error_response(
            status_code=status_code,
            message=message,
            request_id=ctx.request_id,
            error_type=error_type,
            headers=self._diagnostics(ctx, mode),
            extra=extra,
        )

    def _classified_error(
        self,
        ctx: RequestContext,
        exc: BaseException,
        *,
        mode: str = FAST_PATH_MODE,
    ) -> JSONResponse:
        if isinstance(exc, UpstreamServerError):
            return self._error(
                ctx,
                status_code=exc.status_code,
                message=str(exc),
                error_type="upstream_server_error",
                mode=mode,
            )
        if isinstance(exc, ResponseSizeExceededError):
            return self._error(
                ctx,
                status_code=413,
                message=str(exc),
                error_type="response_size_exceeded",
                mode=mode,
            )
        info = classify_error(exc)
        return self._error(
            ctx,
            status_code=info.http_status,
            message=info.message,
            error_type=info.error_type,
            mode=mode,
        )

    async def dispatch(self, request: Request) -> Response:
        ctx = RequestContext(
            request_id=extract_request_id(request.headers),
            method=request.method.upper(),
            path=request.url.path,
            client_ip=extract_client_ip(
                request.headers,
                request.client.host if request.client else None,
            ),
        )

        if ctx.method == "OPTIONS":
            return Response(
                status_code=204,
                headers=self._diagnostics(ctx, FAST_PATH_MODE),
            )

        try:
            profile, user_path = self.resolve(ctx.path)
        except GatewayError as exc:
            logger.warning(
                "dispatch_rejected request_id=%s path=%s error_type=%s",
                ctx.request_id,
                ctx.path,
                exc.error_type,
            )
            return self._error(
                ctx,
                status_code=exc.status_code,
                message=exc.message,
                error_type=exc.error_type,
                extra=exc.details,
            )

        ctx.provider_alias = profile.alias
        body = b"" if ctx.method in BODYLESS_METHODS else await request.body()
        logger.info(
            "dispatch_start request_id=%s provider=%s method=%s path=%s client_ip=%s",
            ctx.request_id,
            ctx.provider_alias,
            ctx.method,
            user_path,
            ctx.client_ip,
        )

        decision = decide_route(
            method=ctx.method,
            headers=request.headers,
            body=body,
            path=f"/{user_path}",
            provider_alias=profile.alias,
            query_string=request.url.query,
        )
        logger.info(
            "route_decision request_id=%s provider=%s mode=%s reason=%s estimated_ms=%s",
            ctx.request_id,
            ctx.provider_alias,
            decision.mode,
            decision.reason,
            decision.estimated_duration_ms,
        )

        if decision.use_long_path:
            return await self._dispatch_long_path(
                ctx,
                request=request,
                profile=profile,
                user_path=user_path,
                body=body,
            )

        fast_timeout_ms = self._fast_timeout_ms(profile)
        try:
            return await self._run_fast_path(
                ctx,
                request=request,
                profile=profile,
                user_path=user_path,
                body=body,
                deadline=Deadline.starting_at(ctx.start_time, fast_timeout_ms),
            )
        except FAST_PATH_FAILURES as exc:
            logger.warning(
                "fast_path_failed request_id=%s provider=%s error_type=%s error=%s",
                ctx.request_id,
                ctx.provider_alias,
                type(exc).__name__,
                exc,
            )
            return self._classified_error(ctx, exc)

    def _fast_timeout_ms(self, profile: ProviderProfile) -> int:
        ceiling = self._settings.fast_path_timeout_ms
        return min(profile.timeout_ms or ceiling, ceiling)

    async def _run_fast_path(
        self,
        ctx: RequestContext,
        *,
        request: Request,
        profile: ProviderProfile,
        user_path: str,
        body: bytes,
        deadline: Deadline,
    ) -> Response:
        upstream_request = self.client.build_request(
            method=ctx.method,
            url=build_upstream_url(
                profile.host,
                profile.base_path,
                user_path,
                request.url.query,
            ),
            headers=sanitize_request_headers(request.headers, profile),
            content=body or None,
        )
        upstream = await self._executor.execute(
            upstream_request,
            deadline=deadline,
            policy=RetryPolicy.for_profile(profile, enabled=self._settings.enable_retry),
            request_id=ctx.request_id,
        )

        limit_bytes = profile.response_size_limit(self._settings.max_response_size_bytes)
        try:
            check_declared_length(upstream.headers, limit_bytes)
        except ResponseSizeExceededError:
            logger.warning(
                "response_size_exceeded request_id=%s declared=%s limit=%d",
                ctx.request_id,
                upstream.headers.get("content-length"),
                limit_bytes,
            )
            await upstream.aclose()
            raise

        response_headers = filter_response_headers(upstream.headers)
        media_type = response_headers.pop("content-type", None)
        logger.info(
            "fast_path_complete request_id=%s provider=%s status=%d processing_ms=%.2f",
            ctx.request_id,
            ctx.provider_alias,
            upstream.status_code,
            ctx.elapsed_ms(),
        )
        return StreamingResponse(
            content=SizeLimitedStream(
                upstream.aiter_raw(),
                limit_bytes=limit_bytes,
                request_id=ctx.request_id,
                deadline=deadline,
                on_close=upstream.aclose,
                media_type=media_type,
            ),
            status_code=upstream.status_code,
            headers=merge_headers(response_headers, self._fast_path_headers(ctx)),
            media_type=media_type,
        )

    def _long_path_url(self, request: Request, alias: str, user_path: str) -> str:
        base_url = self._settings.long_path_base_url or str(request.base_url)
        url = f"{base_url.rstrip('/')}{LONG_PATH_ROUTE}/{alias}"
        if user_path:
            url += f"/{user_path}"
        if request.url.query:
            url += f"?{request.url.query}"
        return url

    def _long_path_headers(
        self,
        ctx: RequestContext,
        *,
        inbound: Mapping[str, str],
        profile: ProviderProfile,
        user_path: str,
    ) -> httpx.Headers:
        headers = sanitize_request_headers(inbound, profile)
        headers[REQUEST_ID_HEADER] = ctx.request_id
        headers[PROVIDER_DESCRIPTOR_HEADER] = ProviderDescriptor(
            alias=profile.alias,
            profile=profile,
            user_path=user_path,
        ).to_header()
        headers[ORIGINAL_IP_HEADER] = ctx.client_ip
        if self._settings.long_path_shared_secret:
            headers[LONG_PATH_SECRET_HEADER] = self._settings.long_path_shared_secret
        return headers

    async def _forward_long_path(
        self,
        ctx: RequestContext,
        *,
        request: Request,
        profile: ProviderProfile,
        user_path: str,
        body: bytes,
    ) -> Response:
        deadline = Deadline.after(self._settings.long_path_timeout_ms)
        forward_request = self.client.build_request(
            method=ctx.method,
            url=self._long_path_url(request, profile.alias, user_path),
            headers=self._long_path_headers(
                ctx,
                inbound=request.headers,
                profile=profile,
                user_path=user_path,
            ),
            content=body or None,
        )
        logger.info(
            "long_path_forward request_id=%s provider=%s url=%s timeout_ms=%d",
            ctx.request_id,
            ctx.provider_alias,
            forward_request.url,
            deadline.timeout_ms,
        )
        reply = await deadline.run(self.client.send(forward_request, stream=True))
        relayed_mode = reply.headers.get(PROCESSING_MODE_HEADER)
        if reply.status_code >= 500 and relayed_mode != LONG_PATH_MODE:
            await reply.aclose()
            raise LongPathUnavailableError(reply.status_code)

        content = await read_limited(
            reply,
            limit_bytes=profile.response_size_limit(self._settings.max_response_size_bytes),
            deadline=deadline,
            request_id=ctx.request_id,
        )
        logger.info(
            "long_path_complete request_id=%s provider=%s status=%d processing_ms=%.2f",
            ctx.request_id,
            ctx.provider_alias,
            reply.status_code,
            ctx.elapsed_ms(),
        )
        return Response(
            content=content,
            status_code=reply.status_code,
            headers=merge_headers(
                filter_response_headers(reply.headers),
                self._diagnostics(ctx, LONG_PATH_MODE),
            ),
        )

    async def _dispatch_long_path(
        self,
        ctx: RequestContext,
        *,
        request: Request,
        profile: ProviderProfile,
        user_path: str,
        body: bytes,
    ) -> Response:
        try:
            return await self._forward_long_path(
                ctx,
                request=request,
                profile=profile,
                user_path=user_path,
                body=body,
            )
        except LONG_PATH_FAILURES as exc:
            logger.warning(
                "long_path_failed request_id=%s provider=%s error_type=%s error=%s",
                ctx.request_id,
                ctx.provider_alias,
                type(exc).__name__,
                exc,
            )

        if not (profile.allow_fallback and self._settings.enable_fallback):
            return self._long_path_failure(ctx)

        logger.info(
            "long_path_fallback request_id=%s provider=%s",
            ctx.request_id,
            ctx.provider_alias,
        )
        try:
            return await self._run_fast_path(
                ctx,
                request=request,
                profile=profile,
                user_path=user_path,
                body=body,
                deadline=Deadline.after(self._fast_timeout_ms(profile)),
            )
        except FAST_PATH_FAILURES as exc:
            logger.error(
                "long_path_fallback_failed request_id=%s provider=%s error_type=%s error=%s",
                ctx.request_id,
                ctx.provider_alias,
                type(exc).__name__,
                exc,
            )
            return self._long_path_failure(ctx)

    def _long_path_failure(self, ctx: RequestContext) -> JSONResponse:
        return self._error(
            ctx,
            status_code=502,
            message="Long-path processing failed",
            error_type="upstream_failure",
            mode=LONG_PATH_MODE,
        )
