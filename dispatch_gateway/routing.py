from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import parse_qs

from dispatch_gateway.headers import FAST_PATH_MODE, LONG_PATH_MODE

FAST_PATH_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
LARGE_BODY_THRESHOLD_BYTES = 1_048_576

STREAMING_PATHS = (
    "/v1/chat/completions",
    "/v1/completions",
    "/v1/messages",
    "/v1/realtime",
    "/v1/engines",
    "/v1/responses",
    ":streamGenerateContent",
)

LONG_RUNNING_PATHS = (
    "/v1/audio/transcriptions",
    "/v1/audio/translations",
    "/v1/images/generations",
    "/v1/images/edits",
    "/v1/images/variations",
    "/v1/embeddings",
    "/v1/fine-tunes",
    "/v1/fine_tuning/jobs",
    "/v1/files",
    "/v1/batches",
)

PROVIDER_LONG_PATH_OVERRIDES: dict[str, tuple[str, ...]] = {
    "openai": ("/embeddings",),
    "cohere": ("/embed",),
    "gemini": (":batchEmbedContents",),
}

LONG_RUNNING_ESTIMATE_MS = 60_000
LARGE_BODY_ESTIMATE_MS = 30_000
PROVIDER_OVERRIDE_ESTIMATE_MS = 20_000


@dataclass(slots=True, frozen=True)
class RoutingDecision:
    use_long_path: bool
    reason: str
    estimated_duration_ms: int | None = None

    @property
    def mode(self) -> str:
        return LONG_PATH_MODE if self.use_long_path else FAST_PATH_MODE


def _normalize_path(path: str) -> str:
    return path if path.startswith("/") else f"/{path}"


def _matches_any(path: str, fragments: tuple[str, ...]) -> bool:
    return any(fragment in path for fragment in fragments)


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(name).lower(): value for name, value in headers.items()}


def _query_requests_stream(query_string: str) -> bool:
    if not query_string:
        return False
    params = parse_qs(query_string.lstrip("?"), keep_blank_values=True)
    if "true" in params.get("stream", []):
        return True
    return "sse" in params.get("alt", [])


def _body_requests_stream(body: bytes | None, content_type: str | None) -> bool:
    if not body:
        return False
    if content_type and "json" not in content_type.lower():
        return False
    try:
        payload = json.loads(body)
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("stream") is True


def is_streaming_request(
    *,
    path: str,
    headers: Mapping[str, str],
    body: bytes | None = None,
    query_string: str = "",
) -> bool:
    if not _matches_any(_normalize_path(path), STREAMING_PATHS):
        return False
    lowered = _lower_headers(headers)
    if "text/event-stream" in (lowered.get("accept") or "").lower():
        return True
    if _query_requests_stream(query_string):
        return True
    return _body_requests_stream(body, lowered.get("content-type"))


def _declared_body_size(headers: dict[str, str], body: bytes | None) -> int | None:
    raw = (headers.get("content-length") or "").strip()
    if raw:
        try:
            return int(raw)
        except ValueError:
            pass
    if body is not None:
        return len(body)
    return None


def decide_route(
    *,
    method: str,
    headers: Mapping[str, str],
    body: bytes | None,
    path: str,
    provider_alias: str,
    query_string: str = "",
) -> RoutingDecision:
    normalized_method = method.upper()
    normalized_path = _normalize_path(path)

    if normalized_method in FAST_PATH_METHODS:
        return RoutingDecision(False, "Method suitable for fast path")

    if is_streaming_request(
        path=normalized_path,
        headers=headers,
        body=body,
        query_string=query_string,
    ):
        return RoutingDecision(False, "Streaming request")

    if _matches_any(normalized_path, LONG_RUNNING_PATHS):
        return RoutingDecision(True, "Long-running API", LONG_RUNNING_ESTIMATE_MS)

    size = _declared_body_size(_lower_headers(headers), body)
    if size is not None and size > LARGE_BODY_THRESHOLD_BYTES:
        return RoutingDecision(
            True,
            f"Large request body: {size / 1024 / 1024:.2f}MB",
            LARGE_BODY_ESTIMATE_MS,
        )

    override_fragments = PROVIDER_LONG_PATH_OVERRIDES.get(provider_alias, ())
    if override_fragments and _matches_any(normalized_path, override_fragments):
        return RoutingDecision(
            True,
            f"Provider override for {provider_alias}",
            PROVIDER_OVERRIDE_ESTIMATE_MS,
        )

    return RoutingDecision(False, "Default to fast path")
