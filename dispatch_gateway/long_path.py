from __future__ import annotations

import hmac
import logging
import time

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from dispatch_gateway.errors import (
    ForbiddenForwardError,
    GatewayError,
    InvalidDescriptorError,
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
from dispatch_gateway.governor import read_limited
from dispatch_gateway.headers import (
    LONG_PATH_MODE,
    LONG_PATH_SECRET_HEADER,
    PROVIDER_DESCRIPTOR_HEADER,
    build_upstream_url,
    diagnostic_headers,
    extract_request_id,
    filter_response_headers,
    merge_headers,
    sanitize_request_headers,
)
from dispatch_gateway.registry import ProviderProfile, ProviderRegistry
from dispatch_gateway.settings import Settings

LONG_PATH_ROUTE = "/internal/long-path"
BODYLESS_METHODS = frozenset({"GET", "HEAD"})

logger = logging.getLogger("uvicorn.error")


class ProviderDescriptor(BaseModel):
    """Provider context carried from the dispatcher to the long-path executor."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    alias: str
    profile: ProviderProfile
    user_path: str

    def to_header(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_header(cls, raw: str | None) -> ProviderDescriptor:
        if raw is None or not raw.strip():
            raise InvalidDescriptorError("Missing provider descriptor")
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise InvalidDescriptorError(
                f"Invalid provider descriptor: {exc.error_count()} validation error(s)"
            ) from exc


class LongPathExecutor:
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

    def _check_secret(self, request: Request) -> None:
        expected = self._settings.long_path_shared_secret
        if not expected:
            return
        supplied = request.headers.get(LONG_PATH_SECRET_HEADER) or ""
        if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
            raise ForbiddenForwardError("Long-path forwarding call rejected")

    def _check_upstream(self, descriptor: ProviderDescriptor) -> None:
        registered = self._registry.lookup(descriptor.alias)
        if registered is None:
            raise UnknownProviderError(descriptor.alias, self._registry.aliases())
        profile = descriptor.profile
        if (profile.host, profile.base_path) != (registered.host, registered.base_path):
            raise ForbiddenForwardError(
                f"Descriptor upstream does not match provider '{descriptor.alias}'"
            )

    def _error(
        self,
        *,
        status_code: int,
        message: str,
        error_type: str,
        request_id: str,
        started: float,
    ) -> JSONResponse:
        return error_response(
            status_code=status_code,
            message=message,
            request_id=request_id,
            error_type=error_type,
            headers=diagnostic_headers(
                request_id=request_id,
                mode=LONG_PATH_MODE,
                processing_time_ms=(time.perf_counter() - started) * 1000.0,
                allowed_origin=self._settings.allowed_origin,
            ),
        )

    async def handle(self, request: Request, alias: str) -> Response:
        started = time.perf_counter()
        request_id = extract_request_id(request.headers)
        method = request.method.upper()

        try:
            self._check_secret(request)
            descriptor = ProviderDescriptor.from_header(
                request.headers.get(PROVIDER_DESCRIPTOR_HEADER)
            )
            if descriptor.alias != alias:
                raise InvalidDescriptorError(
                    f"Descriptor alias '{descriptor.alias}' does not match '{alias}'"
                )
            self._check_upstream(descriptor)
        except GatewayError as exc:
            logger.warning(
                "long_path_rejected request_id=%s alias=%s error_type=%s error=%s",
                request_id,
                alias,
                exc.error_type,
                exc.message,
            )
            return self._error(
                status_code=exc.status_code,
                message=exc.message,
                error_type=exc.error_type,
                request_id=request_id,
                started=started,
            )

        profile = descriptor.profile
        body = b"" if method in BODYLESS_METHODS else await request.body()
        long_timeout_ms = self._settings.long_path_timeout_ms
        deadline = Deadline.starting_at(
            started, min(profile.timeout_ms or long_timeout_ms, long_timeout_ms)
        )
        upstream_request = self.client.build_request(
            method=method,
            url=build_upstream_url(
                profile.host,
                profile.base_path,
                descriptor.user_path,
                request.url.query,
            ),
            headers=sanitize_request_headers(request.headers, profile),
            content=body or None,
        )

        try:
            upstream = await self._executor.execute(
                upstream_request,
                deadline=deadline,
                policy=RetryPolicy.for_profile(
                    profile, enabled=self._settings.enable_retry
                ),
                request_id=request_id,
            )
            content = await read_limited(
                upstream,
                limit_bytes=profile.response_size_limit(
                    self._settings.max_response_size_bytes
                ),
                deadline=deadline,
                request_id=request_id,
            )
        except UpstreamServerError as exc:
            return self._error(
                status_code=exc.status_code,
                message=str(exc),
                error_type="upstream_server_error",
                request_id=request_id,
                started=started,
            )
        except ResponseSizeExceededError as exc:
            return self._error(
                status_code=413,
                message=str(exc),
                error_type="response_size_exceeded",
                request_id=request_id,
                started=started,
            )
        except (UpstreamTimeoutError, httpx.HTTPError) as exc:
            info = classify_error(exc)
            logger.warning(
                "long_path_upstream_error request_id=%s alias=%s kind=%s error=%s",
                request_id,
                alias,
                info.kind.value,
                exc,
            )
            return self._error(
                status_code=info.http_status,
                message=info.message,
                error_type=info.error_type,
                request_id=request_id,
                started=started,
            )

        processing_time_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "long_path_complete request_id=%s alias=%s status=%d bytes=%d processing_ms=%.2f",
            request_id,
            alias,
            upstream.status_code,
            len(content),
            processing_time_ms,
        )
        return Response(
            content=content,
            status_code=upstream.status_code,
            headers=merge_headers(
                filter_response_headers(upstream.headers),
                diagnostic_headers(
                    request_id=request_id,
                    mode=LONG_PATH_MODE,
                    processing_time_ms=processing_time_ms,
                    allowed_origin=self._settings.allowed_origin,
                ),
            ),
        )
