from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi.responses import JSONResponse


class ErrorKind(str, Enum):
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    DNS = "DNS"
    CONNECTION = "CONNECTION"
    SSL = "SSL"
    SIZE_LIMIT = "SIZE_LIMIT"
    UNKNOWN = "UNKNOWN"
    INVALID_PATH = "INVALID_PATH"
    UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"


@dataclass(slots=True, frozen=True)
class ErrorInfo:
    kind: ErrorKind
    http_status: int
    message: str

    @property
    def error_type(self) -> str:
        return self.kind.value.lower()


class GatewayError(Exception):
    status_code = 500
    error_type = "api_error"
    kind: ErrorKind | None = None

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidPathError(GatewayError):
    status_code = 400
    error_type = "invalid_path"
    kind = ErrorKind.INVALID_PATH


class UnknownProviderError(GatewayError):
    status_code = 404
    error_type = "unknown_provider"
    kind = ErrorKind.UNKNOWN_PROVIDER

    def __init__(self, alias: str, available_providers: list[str]):
        self.alias = alias
        super().__init__(
            f"Service '{alias}' not found",
            details={"available_providers": available_providers},
        )


class InvalidDescriptorError(GatewayError):
    status_code = 400
    error_type = "invalid_descriptor"


class ForbiddenForwardError(GatewayError):
    status_code = 403
    error_type = "forbidden"


class UpstreamTimeoutError(TimeoutError):
    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Upstream request timed out after {timeout_ms} ms")


class UpstreamServerError(Exception):
    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        detail = f"{status_code} {reason}".strip()
        super().__init__(f"Server error: {detail}")


class ResponseSizeExceededError(Exception):
    def __init__(self, size_bytes: int, limit_bytes: int):
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Response size ({_megabytes(size_bytes)}MB) exceeds limit "
            f"({_megabytes(limit_bytes)}MB)"
        )


class LongPathUnavailableError(Exception):
    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"Long-path executor failed with status {status_code}")


_CLASSIFICATION_RULES: tuple[tuple[ErrorKind, int, tuple[str, ...], str], ...] = (
    (
        ErrorKind.TIMEOUT,
        504,
        ("timeout", "timed out", "abort"),
        "Request timed out - upstream service took too long to respond",
    ),
    (
        ErrorKind.NETWORK,
        502,
        (
            "network",
            "fetch failed",
            "connection reset",
            "connection attempts failed",
            "server disconnected",
            "readerror",
            "writeerror",
            "remoteprotocolerror",
        ),
        "Network error - could not reach upstream service",
    ),
    (
        ErrorKind.DNS,
        502,
        (
            "dns",
            "getaddrinfo",
            "name or service not known",
            "name resolution",
            "nodename nor servname",
        ),
        "DNS resolution failed - could not resolve upstream host",
    ),
    (
        ErrorKind.CONNECTION,
        503,
        ("connection refused", "econnrefused"),
        "Connection refused - upstream service unavailable",
    ),
    (
        ErrorKind.SSL,
        502,
        ("ssl", "tls", "certificate"),
        "SSL/TLS error - certificate verification failed",
    ),
    (
        ErrorKind.SIZE_LIMIT,
        413,
        ("size", "413"),
        "Response size exceeds limit",
    ),
)


def error_text(exc: BaseException) -> str:
    message = str(exc).strip()
    return f"{type(exc).__name__} {message}".lower()


def classify_error(exc: BaseException) -> ErrorInfo:
    text = error_text(exc)
    for kind, http_status, terms, message in _CLASSIFICATION_RULES:
        if any(term in text for term in terms):
            return ErrorInfo(kind=kind, http_status=http_status, message=message)
    detail = str(exc).strip() or type(exc).__name__
    return ErrorInfo(
        kind=ErrorKind.UNKNOWN,
        http_status=500,
        message=f"Unknown error: {detail}",
    )


def build_error_body(
    *,
    status_code: int,
    message: str,
    request_id: str,
    error_type: str = "api_error",
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": {
            "message": message,
            "type": error_type,
            "request_id": request_id,
        },
        "status": status_code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if extra:
        body.update(extra)
    return body


def error_response(
    *,
    status_code: int,
    message: str,
    request_id: str,
    error_type: str = "api_error",
    headers: dict[str, str] | None = None,
    extra: dict[str, Any] | None = None,
) -> JSONResponse:
    response_headers = {"Cache-Control": "no-cache, no-store, must-revalidate"}
    if headers:
        response_headers.update(headers)
    return JSONResponse(
        status_code=status_code,
        content=build_error_body(
            status_code=status_code,
            message=message,
            request_id=request_id,
            error_type=error_type,
            extra=extra,
        ),
        headers=response_headers,
    )


def error_marker(
    *,
    message: str,
    error_type: str,
    code: int,
    request_id: str,
    media_type: str | None = None,
) -> bytes:
    payload = json.dumps(
        {
            "error": {
                "message": message,
                "type": error_type,
                "code": code,
                "request_id": request_id,
            }
        },
        ensure_ascii=True,
        separators=(",", ":"),
    )
    if media_type and "text/event-stream" in media_type.lower():
        return f"event: error\ndata: {payload}\n\n".encode("utf-8")
    return payload.encode("utf-8")


def _megabytes(value: int) -> str:
    return f"{value / 1024 / 1024:.2f}"
