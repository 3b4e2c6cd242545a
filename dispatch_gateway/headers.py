from __future__ import annotations

from typing import Iterable, Mapping
from urllib.parse import quote
from uuid import uuid4

import httpx

from dispatch_gateway.registry import ProviderProfile

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; API Gateway/1.0)"
IDENTITY_ENCODING = "identity"

REQUEST_ID_HEADER = "X-Request-Id"
PROCESSING_MODE_HEADER = "X-Processing-Mode"
PROCESSING_TIME_HEADER = "X-Processing-Time"
PROVIDER_DESCRIPTOR_HEADER = "X-Provider-Descriptor"
ORIGINAL_IP_HEADER = "X-Original-IP"
LONG_PATH_SECRET_HEADER = "X-Long-Path-Secret"

FAST_PATH_MODE = "fast-path"
LONG_PATH_MODE = "long-path"

ALLOWED_REQUEST_HEADERS = frozenset(
    {
        "content-type",
        "content-length",
        "accept",
        "accept-encoding",
        "accept-language",
        "authorization",
        "user-agent",
        "referer",
        "origin",
        "x-api-key",
        "x-goog-api-key",
        "api-key",
        "anthropic-version",
        "anthropic-beta",
        "openai-beta",
        "openai-organization",
        "x-stainless-arch",
        "x-stainless-lang",
        "x-stainless-os",
        "x-stainless-package-version",
        "x-stainless-runtime",
        "x-stainless-runtime-version",
    }
)

BLOCKED_REQUEST_HEADERS = frozenset(
    {
        "host",
        "connection",
        "cf-connecting-ip",
        "cf-ray",
        "x-forwarded-for",
        "x-real-ip",
        "cookie",
        "set-cookie",
    }
)

INTERNAL_FORWARD_HEADERS = frozenset(
    {
        PROVIDER_DESCRIPTOR_HEADER.lower(),
        ORIGINAL_IP_HEADER.lower(),
        LONG_PATH_SECRET_HEADER.lower(),
    }
)

EXCLUDED_RESPONSE_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "content-length",
        "server",
        "x-powered-by",
        "cf-ray",
        "cf-cache-status",
    }
)

REQUEST_ID_SOURCE_HEADERS = ("x-request-id", "x-correlation-id", "x-trace-id")

CORS_ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS, PATCH, HEAD"
CORS_EXPOSE_HEADERS = (
    "Content-Type, Content-Length, X-Request-Id, X-Processing-Mode, X-Processing-Time"
)
NO_CACHE = "no-cache, no-store, must-revalidate"


def is_allowed_header(name: str) -> bool:
    lower = name.lower()
    if lower in BLOCKED_REQUEST_HEADERS or lower in INTERNAL_FORWARD_HEADERS:
        return False
    if lower in ALLOWED_REQUEST_HEADERS:
        return True
    return (
        lower.startswith("x-")
        and not lower.startswith("x-forwarded")
        and not lower.startswith("x-real")
    )


def sanitize_request_headers(
    inbound: Mapping[str, str],
    profile: ProviderProfile,
) -> httpx.Headers:
    headers = httpx.Headers()
    for name, value in profile.default_headers.items():
        headers[name] = value

    for name, value in inbound.items():
        if is_allowed_header(name):
            headers[name] = value

    if "user-agent" not in headers:
        headers["User-Agent"] = DEFAULT_USER_AGENT
    if "accept-encoding" not in headers:
        headers["Accept-Encoding"] = IDENTITY_ENCODING

    headers.pop("host", None)
    headers.pop("connection", None)
    return headers


def filter_response_headers(
    headers: httpx.Headers | Mapping[str, str],
    *,
    exclude: frozenset[str] = EXCLUDED_RESPONSE_HEADERS,
) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in exclude:
            filtered[name] = value
    return filtered


def merge_headers(
    base: Mapping[str, str],
    overrides: Mapping[str, str],
) -> dict[str, str]:
    override_names = {name.lower() for name in overrides}
    merged = {
        name: value
        for name, value in base.items()
        if name.lower() not in override_names
    }
    merged.update(overrides)
    return merged


def cors_headers(allowed_origin: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": allowed_origin,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": "*",
        "Access-Control-Expose-Headers": CORS_EXPOSE_HEADERS,
        "Access-Control-Max-Age": "86400",
    }


def diagnostic_headers(
    *,
    request_id: str,
    mode: str,
    processing_time_ms: float,
    allowed_origin: str,
) -> dict[str, str]:
    return {
        **cors_headers(allowed_origin),
        REQUEST_ID_HEADER: request_id,
        PROCESSING_MODE_HEADER: mode,
        PROCESSING_TIME_HEADER: f"{processing_time_ms:.2f}",
    }


def extract_request_id(headers: Mapping[str, str]) -> str:
    for name in REQUEST_ID_SOURCE_HEADERS:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return str(uuid4())


def extract_client_ip(headers: Mapping[str, str], peer: str | None = None) -> str:
    cf_ip = (headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    forwarded_for = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded_for:
        return forwarded_for
    for name in ("x-real-ip", "x-client-ip"):
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return peer or "unknown"


def sanitize_path(segments: Iterable[str]) -> str:
    cleaned: list[str] = []
    for segment in segments:
        if not segment or segment in {".", ".."}:
            continue
        cleaned.append(quote(segment, safe="!*'():"))
    return "/".join(cleaned)


def build_upstream_url(
    host: str,
    base_path: str | None,
    user_path: str,
    query_string: str = "",
) -> str:
    clean_base = (base_path or "").strip("/")
    clean_user = user_path.strip("/")
    full_path = "/".join(part for part in (clean_base, clean_user) if part)
    url = f"https://{host}"
    if full_path:
        url += f"/{full_path}"
    if query_string:
        url += f"?{query_string.lstrip('?')}"
    return url
