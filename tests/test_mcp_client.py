from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import pytest
from mcp.types import CallToolResult, TextContent

from calliope_proxy.tools.markdown import MarkdownConverter
from calliope_proxy.tools.mcp_client import (
    ToolCallError,
    ToolClient,
    ToolClientRegistry,
    ToolConnectionError,
    extract_tool_result,
)

SERVICE_URL = "http://markitdown.test/mcp"


def _text_result(text: str, is_error: bool = False) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=text)], isError=is_error
    )


class _FakeTransport:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.opened: list[str] = []
        self.closed = 0

    @asynccontextmanager
    async def __call__(self, url: str) -> AsyncIterator[tuple[str, str]]:
        self.opened.append(url)
        if self.error is not None:
            raise self.error
        try:
            yield ("read-stream", "write-stream")
        finally:
            self.closed += 1


class _FakeSession:
    instances: list[_FakeSession] = []

    def __init__(self, read_stream: Any, write_stream: Any) -> None:
        self.streams = (read_stream, write_stream)
        self.initialized = False
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.result: CallToolResult = _text_result("# converted")
        _FakeSession.instances.append(self)

    async def __aenter__(self) -> _FakeSession:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def initialize(self) -> None:
        self.initialized = True

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        self.calls.append((name, arguments))
        return self.result


@pytest.fixture(autouse=True)
def _reset_sessions() -> None:
    _FakeSession.instances.clear()


def _client(*transports: tuple[str, _FakeTransport]) -> ToolClient:
    return ToolClient(
        SERVICE_URL,
        transports=transports,
        session_factory=_FakeSession,
        connect_timeout_seconds=1.0,
    )


def test_call_tool_connects_lazily_over_primary_transport() -> None:
    primary = _FakeTransport()
    fallback = _FakeTransport()
    client = _client(("streamable_http", primary), ("sse", fallback))

    async def scenario() -> Any:
        assert client.is_connected is False
        result = await client.call_tool("convert_to_markdown", {"html": "<p>x</p>"})
        second = await client.call_tool("convert_to_markdown", {"html": "<p>y</p>"})
        await client.disconnect()
        return result, second

    result, second = asyncio.run(scenario())

    assert result == "# converted"
    assert second == "# converted"
    assert primary.opened == [SERVICE_URL]
    assert primary.closed == 1
    assert fallback.opened == []
    assert len(_FakeSession.instances) == 1
    session = _FakeSession.instances[0]
    assert session.initialized is True
    assert session.calls == [
        ("convert_to_markdown", {"html": "<p>x</p>"}),
        ("convert_to_markdown", {"html": "<p>y</p>"}),
    ]
    assert client.is_connected is False


def test_connect_falls_back_to_sse(caplog: Any) -> None:
    primary = _FakeTransport(error=ConnectionError("405 Method Not Allowed"))
    fallback = _FakeTransport()
    client = _client(("streamable_http", primary), ("sse", fallback))

    async def scenario() -> str | None:
        await client.connect()
        name = client.transport_name
        await client.disconnect()
        return name

    with caplog.at_level("WARNING", logger="uvicorn.error"):
        transport_name = asyncio.run(scenario())

    assert transport_name == "sse"
    assert primary.opened == [SERVICE_URL]
    assert fallback.opened == [SERVICE_URL]
    assert any(
        "tool_client_transport_failed" in record.message
        and "transport=streamable_http" in record.message
        for record in caplog.records
    )


def test_connect_raises_when_every_transport_fails() -> None:
    client = _client(
        ("streamable_http", _FakeTransport(error=ConnectionError("refused"))),
        ("sse", _FakeTransport(error=ConnectionError("refused again"))),
    )

    with pytest.raises(ToolConnectionError) as exc_info:
        asyncio.run(client.connect())

    message = str(exc_info.value)
    assert SERVICE_URL in message
    assert "streamable_http: refused" in message
    assert "sse: refused again" in message
    assert client.is_connected is False


def test_registry_reuses_one_client_per_url() -> None:
    created: list[str] = []

    def factory(url: str) -> ToolClient:
        created.append(url)
        return _client(("streamable_http", _FakeTransport()))

    registry = ToolClientRegistry(client_factory=factory)

    first = registry.get(SERVICE_URL)
    again = registry.get(SERVICE_URL)
    other = registry.get("http://other.test/mcp")

    assert first is again
    assert other is not first
    assert created == [SERVICE_URL, "http://other.test/mcp"]
    assert len(registry) == 2
    asyncio.run(registry.close())
    assert len(registry) == 0


def test_extract_tool_result_variants() -> None:
    assert extract_tool_result("t", _text_result("plain text")) == "plain text"

    structured = CallToolResult(
        content=[TextContent(type="text", text="ignored")],
        structuredContent={"result": "# from structured"},
        isError=False,
    )
    assert extract_tool_result("t", structured) == "# from structured"

    with pytest.raises(ToolCallError) as exc_info:
        extract_tool_result("t", _text_result("bad html", is_error=True))
    assert str(exc_info.value) == "Tool 't' failed: bad html"


def test_markdown_converter_calls_convert_tool() -> None:
    transport = _FakeTransport()
    registry = ToolClientRegistry(
        client_factory=lambda url: _client(("streamable_http", transport))
    )
    converter = MarkdownConverter(registry, SERVICE_URL)

    async def scenario() -> str:
        markdown = await converter.convert("<h1>Title</h1>")
        await registry.close()
        return markdown

    assert asyncio.run(scenario()) == "# converted"
    assert _FakeSession.instances[0].calls == [
        ("convert_to_markdown", {"html": "<h1>Title</h1>"})
    ]


def test_markdown_converter_surfaces_tool_errors() -> None:
    transport = _FakeTransport()
    registry = ToolClientRegistry(
        client_factory=lambda url: _client(("streamable_http", transport))
    )
    converter = MarkdownConverter(registry, SERVICE_URL)

    async def scenario() -> None:
        await registry.get(SERVICE_URL).connect()
        _FakeSession.instances[0].result = _text_result("parse failure", is_error=True)
        try:
            await converter.convert("<p>")
        finally:
            await registry.close()

    with pytest.raises(ToolCallError, match="parse failure"):
        asyncio.run(scenario())
