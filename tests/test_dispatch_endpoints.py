from __future__ import annotations

import json
import logging

import httpx

from dispatch_gateway.main import app
from tests.client_test_utils import (
    build_test_client,
    install_upstream,
    upstream_response,
)

LONG_PATH_HOST = "long-path.internal"
SSE_BODY = b'data: {"choices":[{"delta":{"content":"hi"}}]}\n\ndata: [DONE]\n\n'


def _json_reply(payload: dict, status_code: int = 200, **headers: str) -> httpx.Response:
    return upstream_response(
        status_code,
        json.dumps(payload).encode("utf-8"),
        headers={"content-type": "application/json", **headers},
    )


def _assert_guaranteed_headers(response: httpx.Response, mode: str) -> None:
    assert response.headers["x-request-id"]
    assert response.headers["x-processing-mode"] == mode
    float(response.headers["x-processing-time"])
    assert response.headers["access-control-allow-origin"] == "*"
    assert "POST" in response.headers["access-control-allow-methods"]
    assert response.headers["access-control-max-age"] == "86400"


def test_health_endpoints(monkeypatch):
    with build_test_client(
        monkeypatch, GATEWAY_VERSION="2.1.0", ENVIRONMENT="test"
    ) as client:
        for path in ("/health", "/gw/health"):
            response = client.get(path)
            assert response.status_code == 200
            body = response.json()
            assert body["status"] == "ok"
            assert body["version"] == "2.1.0"
            assert body["env"] == "test"
            assert body["service"] == "llm-dispatch-gateway"
            assert response.headers["access-control-allow-origin"] == "*"


def test_welcome_page_lists_providers(monkeypatch):
    with build_test_client(monkeypatch) as client:
        response = client.get("/")
    assert response.status_code == 200
    assert "text/html" in response.headers["content-type"]
    assert "/gw/openai/" in response.text
    assert "/gw/httpbin/" in response.text


def test_options_preflight_skips_dispatch(monkeypatch):
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    with build_test_client(monkeypatch, ALLOWED_ORIGIN="https://app.example") as client:
        install_upstream(handler)
        response = client.options(
            "/gw/openai/v1/chat/completions",
            headers={"x-request-id": "req-pre"},
        )
    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == "https://app.example"
    assert response.headers["x-request-id"] == "req-pre"
    assert response.headers["x-processing-mode"] == "fast-path"
    float(response.headers["x-processing-time"])
    assert calls == []


def test_invalid_path_returns_400(monkeypatch):
    with build_test_client(monkeypatch) as client:
        response = client.post("/gw/openai", json={})
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["type"] == "invalid_path"
    assert "openai" in body["available_providers"]
    assert body["example"] == "/gw/openai/v1/chat/completions"
    assert body["status"] == 400
    _assert_guaranteed_headers(response, "fast-path")


def test_unknown_provider_returns_404(monkeypatch):
    with build_test_client(monkeypatch) as client:
        response = client.post(
            "/gw/nope/v1/chat/completions",
            json={},
            headers={"x-correlation-id": "corr-1"},
        )
    assert response.status_code == 404
    body = response.json()
    assert body["error"]["message"] == "Service 'nope' not found"
    assert body["error"]["request_id"] == "corr-1"
    assert "groq" in body["available_providers"]
    assert response.headers["x-request-id"] == "corr-1"


def test_streaming_chat_uses_fast_path(monkeypatch):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return upstream_response(
            200,
            SSE_BODY,
            headers={"content-type": "text/event-stream", "server": "cloudflare"},
            declare_length=False,
        )

    with build_test_client(monkeypatch) as client:
        install_upstream(handler)
        response = client.post(
            "/gw/openai/v1/chat/completions",
            json={"model": "gpt-4o-mini", "stream": True, "messages": []},
            headers={
                "authorization": "Bearer sk-test",
                "cookie": "session=1",
                "x-forwarded-for": "1.2.3.4",
                "x-request-id": "req-stream",
            },
        )

    assert response.status_code == 200
    assert response.content == SSE_BODY
    assert response.headers["content-type"].startswith("text/event-stream")
    _assert_guaranteed_headers(response, "fast-path")
    assert response.headers["x-request-id"] == "req-stream"
    assert response.headers["x-gateway-version"] == "1.0.0"
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["x-frame-options"] == "DENY"
    assert response.headers["x-accel-buffering"] == "no"
    assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert "server" not in response.headers

    assert len(seen) == 1
    upstream_request = seen[0]
    assert str(upstream_request.url) == "https://api.openai.com/v1/chat/completions"
    assert upstream_request.headers["authorization"] == "Bearer sk-test"
    assert "cookie" not in upstream_request.headers
    assert "x-forwarded-for" not in upstream_request.headers
    assert json.loads(upstream_request.content)["stream"] is True


def test_fast_path_applies_base_path_and_query(monkeypatch):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _json_reply({"data": []})

    with build_test_client(monkeypatch) as client:
        install_upstream(handler)
        response = client.get("/gw/groq/v1/models?limit=5")

    assert response.status_code == 200
    assert response.json() == {"data": []}
    assert str(seen[0].url) == "https://api.groq.com/openai/v1/models?limit=5"


def test_declared_oversized_response_returns_413(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return upstream_response(200, b"x" * 64)

    with build_test_client(monkeypatch, MAX_RESPONSE_SIZE_BYTES=16) as client:
        install_upstream(handler)
        response = client.get("/gw/groq/v1/models")

    assert response.status_code == 413
    assert response.json()["error"]["type"] == "response_size_exceeded"
    _assert_guaranteed_headers(response, "fast-path")


def test_streamed_oversized_response_ends_with_marker(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return upstream_response(
            200,
            b"x" * 64,
            headers={"content-type": "application/json"},
            declare_length=False,
        )

    with build_test_client(monkeypatch, MAX_RESPONSE_SIZE_BYTES=16) as client:
        install_upstream(handler)
        response = client.get("/gw/groq/v1/models")

    assert response.status_code == 200
    marker = response.json()
    assert marker["error"]["type"] == "response_size_exceeded"
    assert marker["error"]["code"] == 413


def test_exhausted_server_errors_surface_upstream_status(monkeypatch):
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return upstream_response(503)

    with build_test_client(monkeypatch) as client:
        install_upstream(handler)
        response = client.get("/gw/groq/v1/models")

    assert response.status_code == 503
    assert response.json()["error"]["type"] == "upstream_server_error"
    assert len(attempts) == 2


def test_retry_disabled_passes_server_error_through(monkeypatch):
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return _json_reply({"error": "overloaded"}, status_code=503)

    with build_test_client(monkeypatch, ENABLE_RETRY="false") as client:
        install_upstream(handler)
        response = client.get("/gw/groq/v1/models")

    assert response.status_code == 503
    assert response.json() == {"error": "overloaded"}
    assert len(attempts) == 1


def test_transport_error_is_classified(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

    with build_test_client(monkeypatch) as client:
        install_upstream(handler)
        response = client.delete("/gw/groq/v1/files/file-1")

    assert response.status_code == 503
    assert response.json()["error"]["type"] == "connection"
    _assert_guaranteed_headers(response, "fast-path")


def test_embeddings_forwarded_to_long_path(monkeypatch):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _json_reply({"object": "list"}, **{"X-Processing-Mode": "long-path"})

    with build_test_client(monkeypatch, LONG_PATH_SHARED_SECRET="s3cret") as client:
        install_upstream(handler)
        response = client.post(
            "/gw/openai/v1/embeddings?trace=1",
            json={"input": "hello", "model": "text-embedding-3-small"},
            headers={"authorization": "Bearer sk-test", "x-request-id": "req-long"},
        )

    assert response.status_code == 200
    assert response.json() == {"object": "list"}
    _assert_guaranteed_headers(response, "long-path")

    assert len(seen) == 1
    forward = seen[0]
    assert str(forward.url) == (
        f"http://{LONG_PATH_HOST}/internal/long-path/openai/v1/embeddings?trace=1"
    )
    assert forward.method == "POST"
    assert forward.headers["authorization"] == "Bearer sk-test"
    assert forward.headers["x-request-id"] == "req-long"
    assert forward.headers["x-long-path-secret"] == "s3cret"
    assert forward.headers["x-original-ip"] == "testclient"
    descriptor = json.loads(forward.headers["x-provider-descriptor"])
    assert descriptor["alias"] == "openai"
    assert descriptor["userPath"] == "v1/embeddings"
    assert descriptor["profile"]["host"] == "api.openai.com"
    assert json.loads(forward.content)["input"] == "hello"


def test_long_path_failure_falls_back_to_fast_path(monkeypatch, caplog):
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == LONG_PATH_HOST:
            raise httpx.ConnectError("All connection attempts failed", request=request)
        return _json_reply({"object": "list"})

    with caplog.at_level(logging.INFO):
        with build_test_client(monkeypatch) as client:
            install_upstream(handler)
            response = client.post("/gw/openai/v1/embeddings", json={"input": "x"})

    assert response.status_code == 200
    assert response.json() == {"object": "list"}
    assert response.headers["x-processing-mode"] == "fast-path"
    assert hosts == [LONG_PATH_HOST, "api.openai.com"]
    assert "long_path_fallback" in caplog.text


def test_untagged_long_path_server_error_falls_back(monkeypatch):
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == LONG_PATH_HOST:
            return upstream_response(502, b"Bad Gateway")
        return _json_reply({"object": "list"})

    with build_test_client(monkeypatch) as client:
        install_upstream(handler)
        response = client.post("/gw/openai/v1/embeddings", json={"input": "x"})

    assert response.status_code == 200
    assert hosts == [LONG_PATH_HOST, "api.openai.com"]


def test_tagged_long_path_error_is_relayed(monkeypatch):
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return _json_reply(
            {"error": {"type": "timeout"}},
            status_code=504,
            **{"X-Processing-Mode": "long-path"},
        )

    with build_test_client(monkeypatch) as client:
        install_upstream(handler)
        response = client.post("/gw/openai/v1/embeddings", json={"input": "x"})

    assert response.status_code == 504
    assert response.json() == {"error": {"type": "timeout"}}
    assert response.headers["x-processing-mode"] == "long-path"
    assert hosts == [LONG_PATH_HOST]


def test_fallback_disabled_returns_502(monkeypatch):
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        raise httpx.ConnectError("All connection attempts failed", request=request)

    with build_test_client(monkeypatch, ENABLE_FALLBACK="false") as client:
        install_upstream(handler)
        response = client.post("/gw/openai/v1/embeddings", json={"input": "x"})

    assert response.status_code == 502
    body = response.json()
    assert body["error"]["type"] == "upstream_failure"
    assert body["error"]["message"] == "Long-path processing failed"
    _assert_guaranteed_headers(response, "long-path")
    assert hosts == [LONG_PATH_HOST]


def test_provider_can_opt_out_of_fallback(monkeypatch):
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return upstream_response(500)

    with build_test_client(
        monkeypatch,
        PROVIDER_OVERRIDES=json.dumps({"cohere": {"allowFallback": False}}),
    ) as client:
        install_upstream(handler)
        response = client.post("/gw/cohere/v1/embed", json={"texts": ["x"]})

    assert response.status_code == 502
    assert response.json()["error"]["type"] == "upstream_failure"
    assert hosts == [LONG_PATH_HOST]


def test_failed_fallback_returns_502(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("All connection attempts failed", request=request)

    with build_test_client(monkeypatch) as client:
        install_upstream(handler)
        response = client.post("/gw/openai/v1/embeddings", json={"input": "x"})

    assert response.status_code == 502
    assert response.json()["error"]["message"] == "Long-path processing failed"


def test_long_path_round_trip_through_internal_executor(monkeypatch):
    upstream_requests: list[httpx.Request] = []
    asgi = httpx.ASGITransport(app=app)

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == LONG_PATH_HOST:
            return await asgi.handle_async_request(request)
        upstream_requests.append(request)
        return _json_reply({"object": "list", "data": [{"embedding": [0.1]}]})

    with build_test_client(monkeypatch) as client:
        install_upstream(handler)
        response = client.post(
            "/gw/openai/v1/embeddings",
            json={"input": "hello"},
            headers={"authorization": "Bearer sk-test"},
        )

    assert response.status_code == 200
    assert response.json()["data"][0]["embedding"] == [0.1]
    assert response.headers["x-processing-mode"] == "long-path"

    assert len(upstream_requests) == 1
    upstream_request = upstream_requests[0]
    assert str(upstream_request.url) == "https://api.openai.com/v1/embeddings"
    assert upstream_request.headers["authorization"] == "Bearer sk-test"
    assert "x-provider-descriptor" not in upstream_request.headers
    assert "x-original-ip" not in upstream_request.headers
