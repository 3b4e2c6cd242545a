from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Mapping

import httpx

from dispatch_gateway.errors import (
    ResponseSizeExceededError,
    UpstreamTimeoutError,
    classify_error,
    error_marker,
)
from dispatch_gateway.executor import Deadline

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class StreamBudget:
    limit_bytes: int
    bytes_seen: int = 0
    aborted: bool = False

    @property
    def unlimited(self) -> bool:
        return self.limit_bytes <= 0

    def consume(self, size: int) -> bool:
        """Count `size` bytes; False once the running total passes the limit."""
        if self.aborted:
            return False
        self.bytes_seen += size
        if not self.unlimited and self.bytes_seen > self.limit_bytes:
            self.aborted = True
            return False
        return True


def declared_length(headers: Mapping[str, str]) -> int | None:
    raw = (headers.get("content-length") or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def check_declared_length(headers: Mapping[str, str], limit_bytes: int) -> None:
    if limit_bytes <= 0:
        return
    size = declared_length(headers)
    if size is not None and size > limit_bytes:
        raise ResponseSizeExceededError(size, limit_bytes)


class SizeLimitedStream:
    """Relay upstream chunks under a byte budget and an optional deadline.

    Failures after the first byte cannot change the status line, so they end
    the stream with an error marker instead of raising.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        *,
        limit_bytes: int,
        request_id: str,
        deadline: Deadline | None = None,
        on_close: Callable[[], Awaitable[None]] | None = None,
        media_type: str | None = None,
    ) -> None:
        self._chunks = chunks
        self._deadline = deadline
        self._on_close = on_close
        self._request_id = request_id
        self.media_type = media_type
        self.budget = StreamBudget(limit_bytes=limit_bytes)
        self.error: BaseException | None = None

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    def _marker(self, *, message: str, error_type: str, code: int) -> bytes:
        return error_marker(
            message=message,
            error_type=error_type,
            code=code,
            request_id=self._request_id,
            media_type=self.media_type,
        )

    async def _next_chunk(self) -> bytes:
        if self._deadline is None:
            return await self._chunks.__anext__()
        return await self._deadline.run(self._chunks.__anext__())

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            while True:
                try:
                    chunk = await self._next_chunk()
                except StopAsyncIteration:
                    return
                except UpstreamTimeoutError as exc:
                    self.error = exc
                    logger.warning(
                        "stream_deadline_exceeded request_id=%s timeout_ms=%d bytes=%d",
                        self._request_id,
                        exc.timeout_ms,
                        self.budget.bytes_seen,
                    )
                    yield self._marker(
                        message=str(exc),
                        error_type="gateway_timeout",
                        code=504,
                    )
                    return
                except httpx.TransportError as exc:
                    self.error = exc
                    info = classify_error(exc)
                    logger.warning(
                        "stream_upstream_error request_id=%s kind=%s error=%s",
                        self._request_id,
                        info.kind.value,
                        exc,
                    )
                    yield self._marker(
                        message=info.message,
                        error_type=info.error_type,
                        code=info.http_status,
                    )
                    return

                if not self.budget.consume(len(chunk)):
                    exceeded = ResponseSizeExceededError(
                        self.budget.bytes_seen, self.budget.limit_bytes
                    )
                    self.error = exceeded
                    logger.warning(
                        "response_size_exceeded request_id=%s bytes=%d limit=%d",
                        self._request_id,
                        self.budget.bytes_seen,
                        self.budget.limit_bytes,
                    )
                    yield self._marker(
                        message=str(exceeded),
                        error_type="response_size_exceeded",
                        code=413,
                    )
                    return
                if chunk:
                    yield chunk
        finally:
            if self._on_close is not None:
                await self._on_close()


async def read_limited(
    response: httpx.Response,
    *,
    limit_bytes: int,
    deadline: Deadline,
    request_id: str,
) -> bytes:
    budget = StreamBudget(limit_bytes=limit_bytes)
    parts: list[bytes] = []
    chunks = response.aiter_raw()
    try:
        check_declared_length(response.headers, limit_bytes)
        while True:
            try:
                chunk = await deadline.run(chunks.__anext__())
            except StopAsyncIteration:
                break
            if not budget.consume(len(chunk)):
                logger.warning(
                    "response_size_exceeded request_id=%s bytes=%d limit=%d",
                    request_id,
                    budget.bytes_seen,
                    budget.limit_bytes,
                )
                raise ResponseSizeExceededError(budget.bytes_seen, budget.limit_bytes)
            parts.append(chunk)
    finally:
        await response.aclose()
    return b"".join(parts)
