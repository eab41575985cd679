from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
}

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class Buffered:
    content: bytes
    media_type: str | None = None

    def json(self) -> Any:
        return json.loads(self.content)


@dataclass(slots=True)
class Streamed:
    response: httpx.Response
    _consumed: bool = field(default=False, init=False)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("Upstream stream has already been consumed.")
        self._consumed = True
        try:
            async for chunk in self.response.aiter_bytes():
                if chunk:
                    yield chunk
        finally:
            await self.response.aclose()

    async def close(self) -> None:
        await self.response.aclose()


@dataclass(slots=True)
class ForwardResult:
    status: int
    body: Buffered | Streamed
    headers: dict[str, str | list[str]] = field(default_factory=dict)

    @property
    def is_stream(self) -> bool:
        return isinstance(self.body, Streamed)


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str | list[str]]:
    filtered: dict[str, str | list[str]] = {}
    for name, value in headers.multi_items():
        key = name.lower()
        if key in HOP_BY_HOP_RESPONSE_HEADERS:
            continue
        existing = filtered.get(key)
        if existing is None:
            filtered[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            filtered[key] = [existing, value]
    return filtered


def _json_body(payload: dict[str, Any]) -> Buffered:
    return Buffered(
        content=json.dumps(payload).encode("utf-8"),
        media_type="application/json",
    )


def _error_result(error: str, exc: BaseException) -> ForwardResult:
    return ForwardResult(
        status=500,
        body=_json_body({"error": error, "details": str(exc) or repr(exc)}),
        headers={"content-type": "application/json"},
    )


class RequestForwarder:
    """Single-attempt upstream caller producing a ForwardResult for every call."""

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        connect_timeout_seconds: float | None = None,
    ) -> None:
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        connect_timeout = (
            max(0.1, float(connect_timeout_seconds))
            if connect_timeout_seconds is not None
            else min(10.0, self.timeout_seconds)
        )
        self._buffered_timeout = httpx.Timeout(
            self.timeout_seconds, connect=connect_timeout
        )
        self._stream_timeout = httpx.Timeout(None, connect=connect_timeout)
        self.client = httpx.AsyncClient(
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def build_headers(auth_token: str, wants_stream: bool) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {auth_token}",
            "Accept": "text/event-stream" if wants_stream else "application/json",
        }

    async def forward(
        self,
        method: str,
        url: str,
        auth_token: str,
        json_body: dict[str, Any],
        wants_stream: bool = False,
        request_id: str | None = None,
    ) -> ForwardResult:
        try:
            request = self.client.build_request(
                method=method,
                url=url,
                json=json_body,
                headers=self.build_headers(auth_token, wants_stream),
                timeout=self._stream_timeout if wants_stream else self._buffered_timeout,
            )
            upstream = await self.client.send(request, stream=wants_stream)
        except httpx.RequestError as exc:
            logger.error(
                "proxy_request_error request_id=%s url=%s error_type=%s error=%s",
                request_id,
                url,
                exc.__class__.__name__,
                str(exc) or repr(exc),
            )
            return _error_result("Error proxying request", exc)
        except Exception as exc:
            logger.exception(
                "proxy_unexpected_error request_id=%s url=%s", request_id, url
            )
            return _error_result("Unexpected error during proxying", exc)

        headers = _filter_response_headers(upstream.headers)
        media_type = upstream.headers.get("content-type")
        logger.info(
            "proxy_upstream_response request_id=%s url=%s status=%d stream=%s",
            request_id,
            url,
            upstream.status_code,
            wants_stream,
        )

        if not wants_stream:
            return ForwardResult(
                status=upstream.status_code,
                body=Buffered(content=upstream.content, media_type=media_type),
                headers=headers,
            )

        if upstream.is_success:
            return ForwardResult(
                status=upstream.status_code,
                body=Streamed(response=upstream),
                headers=headers,
            )

        try:
            content = await upstream.aread()
        except httpx.HTTPError as exc:
            logger.error(
                "proxy_upstream_error_body_failed request_id=%s url=%s error=%s",
                request_id,
                url,
                str(exc) or repr(exc),
            )
            return _error_result("Error proxying request", exc)
        finally:
            await upstream.aclose()
        logger.warning(
            "proxy_upstream_stream_rejected request_id=%s url=%s status=%d",
            request_id,
            url,
            upstream.status_code,
        )
        return ForwardResult(
            status=upstream.status_code,
            body=Buffered(content=content, media_type=media_type),
            headers=headers,
        )
