import asyncio
import json
from typing import Any

import httpx

from calliope_proxy.gateway.proxy import Buffered, RequestForwarder, Streamed


def _forwarder(handler: Any) -> RequestForwarder:
    forwarder = RequestForwarder(timeout_seconds=30)
    asyncio.run(forwarder.client.aclose())
    forwarder.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return forwarder


def test_forward_sends_only_gateway_headers_and_json_body() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = dict(request.headers)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "cmpl-1"})

    forwarder = _forwarder(handler)
    result = asyncio.run(
        forwarder.forward(
            method="POST",
            url="https://api.openai.com/v1/chat/completions",
            auth_token="sk-test",
            json_body={"model": "gpt-4", "messages": []},
        )
    )
    asyncio.run(forwarder.close())

    assert result.status == 200
    assert isinstance(result.body, Buffered)
    assert result.body.json() == {"id": "cmpl-1"}
    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["headers"]["authorization"] == "Bearer sk-test"
    assert seen["headers"]["content-type"] == "application/json"
    assert seen["headers"]["accept"] == "application/json"
    assert seen["body"] == {"model": "gpt-4", "messages": []}


def test_forward_passes_upstream_error_status_and_body_through() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={"error": {"message": "Rate limit reached"}},
            headers={"retry-after": "7"},
        )

    forwarder = _forwarder(handler)
    result = asyncio.run(
        forwarder.forward("POST", "https://upstream.example/v1/completions", "k", {})
    )
    asyncio.run(forwarder.close())

    assert result.status == 429
    assert isinstance(result.body, Buffered)
    assert result.body.json() == {"error": {"message": "Rate limit reached"}}
    assert result.headers["retry-after"] == "7"


def test_forward_maps_connection_failure_to_synthetic_500() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Name or service not known", request=request)

    forwarder = _forwarder(handler)
    result = asyncio.run(
        forwarder.forward("POST", "https://nowhere.invalid/v1/embeddings", "k", {})
    )
    asyncio.run(forwarder.close())

    assert result.status == 500
    assert isinstance(result.body, Buffered)
    assert result.body.json() == {
        "error": "Error proxying request",
        "details": "Name or service not known",
    }


def test_forward_maps_unexpected_failure_to_synthetic_500() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        raise RuntimeError("handler exploded")

    forwarder = _forwarder(handler)
    result = asyncio.run(
        forwarder.forward("POST", "https://upstream.example/v1/rerank", "k", {})
    )
    asyncio.run(forwarder.close())

    assert result.status == 500
    assert result.body.json() == {
        "error": "Unexpected error during proxying",
        "details": "handler exploded",
    }


def test_forward_never_retries() -> None:
    calls = 0

    def handler(_: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503, json={"error": "overloaded"})

    forwarder = _forwarder(handler)
    result = asyncio.run(forwarder.forward("POST", "https://u.example/x", "k", {}))
    asyncio.run(forwarder.close())

    assert result.status == 503
    assert calls == 1


def test_forward_filters_hop_by_hop_headers_and_groups_repeats() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=b"{}",
            headers=[
                ("content-type", "application/json"),
                ("connection", "keep-alive"),
                ("x-ratelimit-remaining", "99"),
                ("set-cookie", "a=1"),
                ("set-cookie", "b=2"),
            ],
        )

    forwarder = _forwarder(handler)
    result = asyncio.run(forwarder.forward("POST", "https://u.example/x", "k", {}))
    asyncio.run(forwarder.close())

    assert "connection" not in result.headers
    assert "content-length" not in result.headers
    assert result.headers["x-ratelimit-remaining"] == "99"
    assert result.headers["set-cookie"] == ["a=1", "b=2"]


def test_forward_stream_returns_streamed_body_for_success() -> None:
    chunks = [b'data: {"delta":"Hel"}\n\n', b'data: {"delta":"lo"}\n\n', b"data: [DONE]\n\n"]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["accept"] == "text/event-stream"
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            stream=httpx.ByteStream(b"".join(chunks)),
        )

    forwarder = _forwarder(handler)

    async def scenario() -> tuple[int, bytes, bool]:
        result = await forwarder.forward(
            "POST", "https://u.example/v1/chat/completions", "k", {}, wants_stream=True
        )
        assert isinstance(result.body, Streamed)
        received = b"".join([chunk async for chunk in result.body.iter_bytes()])
        await forwarder.close()
        return result.status, received, result.is_stream

    status, received, is_stream = asyncio.run(scenario())

    assert status == 200
    assert is_stream
    assert received == b"".join(chunks)


def test_forward_stream_buffers_upstream_error_body() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid API key"}})

    forwarder = _forwarder(handler)
    result = asyncio.run(
        forwarder.forward("POST", "https://u.example/x", "k", {}, wants_stream=True)
    )
    asyncio.run(forwarder.close())

    assert result.status == 401
    assert isinstance(result.body, Buffered)
    assert result.body.json() == {"error": {"message": "Invalid API key"}}
