from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from dispatch_gateway.errors import (
    UpstreamServerError,
    UpstreamTimeoutError,
    error_text,
)
from dispatch_gateway.registry import DEFAULT_RETRYABLE_METHODS, ProviderProfile
from dispatch_gateway.settings import Settings

BACKOFF_BASE_MS = 100.0
BACKOFF_CAP_MS = 5000.0
BACKOFF_FLOOR_MS = 100.0
BACKOFF_JITTER_RATIO = 0.3

RETRYABLE_ERROR_TERMS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "fetch",
    "server disconnected",
    "readerror",
    "writeerror",
    "remoteprotocolerror",
    "econnreset",
    "etimedout",
    "dns",
    "getaddrinfo",
    "name resolution",
    "name or service not known",
)

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Deadline:
    timeout_ms: int
    expires_at: float

    @classmethod
    def starting_at(cls, started: float, timeout_ms: int) -> Deadline:
        return cls(timeout_ms=timeout_ms, expires_at=started + timeout_ms / 1000.0)

    @classmethod
    def after(cls, timeout_ms: int) -> Deadline:
        return cls.starting_at(time.perf_counter(), timeout_ms)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.perf_counter())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    async def run(self, awaitable: Awaitable[T]) -> T:
        remaining = self.remaining()
        if remaining <= 0.0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise UpstreamTimeoutError(self.timeout_ms)
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError(self.timeout_ms) from exc


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 0
    retryable_methods: frozenset[str] = frozenset(DEFAULT_RETRYABLE_METHODS)

    @classmethod
    def for_profile(cls, profile: ProviderProfile, *, enabled: bool = True) -> RetryPolicy:
        return cls(
            max_retries=profile.max_retries if enabled else 0,
            retryable_methods=frozenset(profile.retryable_methods),
        )

    def allows(self, method: str) -> bool:
        return self.max_retries > 0 and method.upper() in self.retryable_methods


@dataclass(slots=True)
class RetryState:
    attempt: int = 0
    last_error: BaseException | None = field(default=None)


def compute_backoff_ms(
    attempt: int,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    base = min(BACKOFF_BASE_MS * (2**attempt), BACKOFF_CAP_MS)
    jitter = base * BACKOFF_JITTER_RATIO * (rng() - 0.5)
    return max(base + jitter, BACKOFF_FLOOR_MS)


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TimeoutException):
        return True
    text = error_text(exc)
    return any(term in text for term in RETRYABLE_ERROR_TERMS)


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except Exception:
        return False
    return True


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, float(settings.upstream_connect_timeout_seconds)),
            read=max(0.1, float(settings.upstream_read_timeout_seconds)),
            write=max(0.1, float(settings.upstream_write_timeout_seconds)),
            pool=max(0.1, float(settings.upstream_pool_timeout_seconds)),
        ),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
        http2=_can_enable_http2(),
        follow_redirects=True,
    )


class UpstreamExecutor:
    def __init__(
        self,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._client_getter = client_getter
        self._sleep = sleep
        self._rng = rng

    async def _send(self, request: httpx.Request, deadline: Deadline) -> httpx.Response:
        client = self._client_getter()
        return await deadline.run(client.send(request, stream=True))

    async def _backoff(
        self,
        *,
        state: RetryState,
        deadline: Deadline,
        request: httpx.Request,
        request_id: str,
        policy: RetryPolicy,
    ) -> None:
        delay_ms = compute_backoff_ms(state.attempt, rng=self._rng)
        logger.warning(
            (
                "upstream_retry request_id=%s attempt=%d/%d method=%s url=%s "
                "delay_ms=%.0f reason=%s"
            ),
            request_id,
            state.attempt + 1,
            policy.max_retries,
            request.method,
            request.url,
            delay_ms,
            state.last_error,
        )
        await deadline.run(self._sleep(delay_ms / 1000.0))
        state.attempt += 1

    async def execute(
        self,
        request: httpx.Request,
        *,
        deadline: Deadline,
        policy: RetryPolicy,
        request_id: str,
    ) -> httpx.Response:
        if not policy.allows(request.method):
            return await self._send(request, deadline)

        state = RetryState()
        while True:
            try:
                response = await self._send(request, deadline)
            except httpx.TransportError as exc:
                state.last_error = exc
                logger.warning(
                    "upstream_request_error request_id=%s attempt=%d error_type=%s error=%s",
                    request_id,
                    state.attempt,
                    type(exc).__name__,
                    str(exc).strip() or repr(exc),
                )
                if state.attempt >= policy.max_retries or not is_retryable_error(exc):
                    raise
                await self._backoff(
                    state=state,
                    deadline=deadline,
                    request=request,
                    request_id=request_id,
                    policy=policy,
                )
                continue

            if response.status_code < 500:
                return response

            server_error = UpstreamServerError(
                response.status_code, response.reason_phrase
            )
            state.last_error = server_error
            if state.attempt < policy.max_retries:
                await response.aclose()
                await self._backoff(
                    state=state,
                    deadline=deadline,
                    request=request,
                    request_id=request_id,
                    policy=policy,
                )
                continue

            await response.aclose()
            raise server_error
