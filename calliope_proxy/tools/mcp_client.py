from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager, AsyncExitStack
from typing import Any

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import CallToolResult

logger = logging.getLogger("uvicorn.error")

TransportFactory = Callable[[str], AbstractAsyncContextManager[Any]]

DEFAULT_TRANSPORTS: tuple[tuple[str, TransportFactory], ...] = (
    ("streamable_http", streamablehttp_client),
    ("sse", sse_client),
)


class ToolConnectionError(RuntimeError):
    pass


class ToolCallError(RuntimeError):
    pass


def _text_content(result: CallToolResult) -> str:
    parts: list[str] = []
    for item in result.content or []:
        if getattr(item, "type", None) == "text":
            parts.append(str(getattr(item, "text", "")))
    return "".join(parts)


def extract_tool_result(tool_name: str, result: CallToolResult) -> Any:
    if result.isError:
        message = _text_content(result) or "unknown tool error"
        raise ToolCallError(f"Tool '{tool_name}' failed: {message}")
    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict) and "result" in structured:
        return structured["result"]
    return _text_content(result)


class ToolClient:
    """MCP session for one service URL, opened on first use.

    The transport and session context managers are entered and exited by a
    single owner task, since the underlying task groups must not cross tasks.
    """

    def __init__(
        self,
        url: str,
        transports: Sequence[tuple[str, TransportFactory]] = DEFAULT_TRANSPORTS,
        session_factory: Callable[..., Any] = ClientSession,
        connect_timeout_seconds: float = 10.0,
    ) -> None:
        self.url = url
        self.transports = list(transports)
        self.session_factory = session_factory
        self.connect_timeout_seconds = max(0.1, float(connect_timeout_seconds))
        self.transport_name: str | None = None
        self._session: Any | None = None
        self._owner_task: asyncio.Task[None] | None = None
        self._closed: asyncio.Event | None = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    async def _hold_connection(
        self,
        transport_name: str,
        factory: TransportFactory,
        ready: asyncio.Future[Any],
        closed: asyncio.Event,
    ) -> None:
        session: Any | None = None
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(factory(self.url))
                read_stream, write_stream = streams[0], streams[1]
                session = await stack.enter_async_context(
                    self.session_factory(read_stream, write_stream)
                )
                await session.initialize()
                ready.set_result(session)
                await closed.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.warning(
                    "tool_client_connection_lost url=%s transport=%s error=%s",
                    self.url,
                    transport_name,
                    exc,
                )
        finally:
            if not ready.done():
                ready.cancel()
            if session is not None and self._session is session:
                self._session = None

    async def _open(self, transport_name: str, factory: TransportFactory) -> Any:
        loop = asyncio.get_running_loop()
        ready: asyncio.Future[Any] = loop.create_future()
        closed = asyncio.Event()
        task = asyncio.create_task(
            self._hold_connection(transport_name, factory, ready, closed),
            name=f"tool-client-{transport_name}",
        )
        try:
            session = await asyncio.wait_for(
                asyncio.shield(ready), timeout=self.connect_timeout_seconds
            )
        except Exception:
            closed.set()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        self._owner_task = task
        self._closed = closed
        return session

    async def connect(self) -> None:
        if self._session is not None:
            return
        async with self._lock:
            if self._session is not None:
                return
            failures: list[str] = []
            for transport_name, factory in self.transports:
                try:
                    self._session = await self._open(transport_name, factory)
                except Exception as exc:
                    reason = str(exc) or exc.__class__.__name__
                    failures.append(f"{transport_name}: {reason}")
                    logger.warning(
                        "tool_client_transport_failed url=%s transport=%s error=%s",
                        self.url,
                        transport_name,
                        reason,
                    )
                    continue
                self.transport_name = transport_name
                logger.info(
                    "tool_client_connected url=%s transport=%s",
                    self.url,
                    transport_name,
                )
                return
            raise ToolConnectionError(
                f"Failed to connect to MCP service at {self.url} ({'; '.join(failures)})"
            )

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        await self.connect()
        session = self._session
        if session is None:
            raise ToolConnectionError(f"Failed to connect to MCP service at {self.url}")
        result = await session.call_tool(name, arguments or {})
        return extract_tool_result(name, result)

    async def disconnect(self) -> None:
        async with self._lock:
            closed = self._closed
            task = self._owner_task
            self._session = None
            self._closed = None
            self._owner_task = None
            self.transport_name = None
            if closed is not None:
                closed.set()
            if task is not None:
                try:
                    await asyncio.wait_for(task, timeout=5.0)
                except TimeoutError:
                    logger.warning("tool_client_disconnect_timeout url=%s", self.url)


class ToolClientRegistry:
    """One ToolClient per service URL for the lifetime of the application."""

    def __init__(
        self,
        connect_timeout_seconds: float = 10.0,
        client_factory: Callable[[str], ToolClient] | None = None,
    ) -> None:
        self.connect_timeout_seconds = connect_timeout_seconds
        self._client_factory = client_factory
        self._clients: dict[str, ToolClient] = {}

    def get(self, url: str) -> ToolClient:
        client = self._clients.get(url)
        if client is None:
            if self._client_factory is not None:
                client = self._client_factory(url)
            else:
                client = ToolClient(
                    url, connect_timeout_seconds=self.connect_timeout_seconds
                )
            self._clients[url] = client
        return client

    def __len__(self) -> int:
        return len(self._clients)

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.disconnect()
