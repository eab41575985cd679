from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any, AsyncIterator

import httpx
from fastapi import status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from calliope_proxy.catalogs.core import ProviderCatalog, UnknownProviderError
from calliope_proxy.gateway.credentials import resolve_api_key
from calliope_proxy.gateway.errors import ClientValidationError
from calliope_proxy.gateway.proxy import ForwardResult, RequestForwarder, Streamed
from calliope_proxy.model_utils import (
    ModelIdentifier,
    ModelIdentifierError,
    parse_model_identifier,
)

PROXY_PROPERTIES_FIELD = "calliopeProperties"
STRIPPED_BODY_FIELDS = {"model", PROXY_PROPERTIES_FIELD}
SSE_DEFAULT_HEADERS = {
    "content-type": "text/event-stream",
    "cache-control": "no-cache",
    "x-accel-buffering": "no",
}

logger = logging.getLogger("uvicorn.error")


class ModelProxyEndpoint(str, Enum):
    CHAT_COMPLETIONS = "chat/completions"
    COMPLETIONS = "completions"
    EMBEDDINGS = "embeddings"
    RERANK = "rerank"

    @property
    def path(self) -> str:
        return f"/{self.value}"

    @property
    def requires_rerank(self) -> bool:
        return self is ModelProxyEndpoint.RERANK


def _reject(content: dict[str, Any]) -> ClientValidationError:
    return ClientValidationError(content=content)


def _build_headers(
    headers: Mapping[str, str | list[str] | None],
) -> tuple[dict[str, str], list[tuple[str, str]]]:
    single: dict[str, str] = {}
    repeated: list[tuple[str, str]] = []
    for name, value in headers.items():
        if value is None:
            continue
        if isinstance(value, list):
            repeated.extend((name, item) for item in value if item is not None)
            continue
        single[name] = value
    return single, repeated


def _apply_repeated(response: Response, repeated: list[tuple[str, str]]) -> Response:
    for name, value in repeated:
        response.headers.append(name, value)
    return response


class ModelProxyService:
    def __init__(
        self,
        catalog: ProviderCatalog,
        forwarder: RequestForwarder,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.catalog = catalog
        self.forwarder = forwarder
        self._environ = environ

    def validate_envelope(self, payload: Any) -> tuple[str, dict[str, Any]]:
        if not isinstance(payload, dict):
            raise _reject({"error": "Expected a JSON object request body."})

        model = payload.get("model")
        if model is None or model == "":
            raise _reject({"error": "Missing required parameter: model"})

        properties = payload.get(PROXY_PROPERTIES_FIELD)
        if not properties:
            raise _reject({"error": "Missing calliopeProperties in request body"})

        api_key_location = (
            properties.get("apiKeyLocation") if isinstance(properties, dict) else None
        )
        if not isinstance(api_key_location, str) or not api_key_location:
            raise _reject(
                {"error": "Missing required field: calliopeProperties.apiKeyLocation"}
            )
        return model, properties

    @staticmethod
    def parse_identifier(model: Any) -> ModelIdentifier:
        try:
            return parse_model_identifier(model)
        except ModelIdentifierError as exc:
            raise _reject(
                {
                    "error": "Invalid model string format.",
                    "details": str(exc),
                    "receivedModelString": model,
                }
            ) from exc

    def check_rerank_capability(self, provider: str) -> None:
        if self.catalog.supports_rerank(provider):
            return
        raise _reject(
            {
                "error": f"Rerank is not supported for provider '{provider}'.",
                "provider": provider,
                "supportedProviders": self.catalog.rerank_providers(),
            }
        )

    def resolve_credential(self, api_key_location: str) -> str:
        api_key = resolve_api_key(api_key_location, self._environ)
        if api_key is None:
            raise _reject(
                {
                    "error": (
                        "Failed to retrieve API key. Check apiKeyLocation and "
                        "environment variables."
                    )
                }
            )
        return api_key

    def resolve_base_url(self, provider: str, properties: dict[str, Any]) -> str:
        explicit_base = properties.get("apiBase")
        if not isinstance(explicit_base, str):
            explicit_base = None
        try:
            return self.catalog.resolve_base(provider, explicit_base)
        except UnknownProviderError as exc:
            raise _reject(
                {
                    "error": (
                        "apiBase is required for unknown providers. Please specify "
                        "calliopeProperties.apiBase"
                    ),
                    "provider": provider.lower() or "unknown",
                }
            ) from exc

    @staticmethod
    def build_downstream_body(
        payload: dict[str, Any], identifier: ModelIdentifier
    ) -> dict[str, Any]:
        body = {
            key: value
            for key, value in payload.items()
            if key not in STRIPPED_BODY_FIELDS
        }
        body["model"] = identifier.model_name
        return body

    async def handle(
        self,
        endpoint: ModelProxyEndpoint,
        payload: Any,
        request_id: str = "-",
    ) -> Response:
        model, properties = self.validate_envelope(payload)
        identifier = self.parse_identifier(model)
        if endpoint.requires_rerank:
            self.check_rerank_capability(identifier.provider)
        api_key = self.resolve_credential(properties["apiKeyLocation"])
        base_url = self.resolve_base_url(identifier.provider, properties)

        url = f"{base_url}{endpoint.path}"
        wants_stream = payload.get("stream") is True
        logger.info(
            (
                "model_proxy_forward request_id=%s endpoint=%s provider=%s "
                "model=%s url=%s stream=%s org_scope_id=%s env=%s"
            ),
            request_id,
            endpoint.value,
            identifier.provider,
            identifier.model_name,
            url,
            wants_stream,
            properties.get("orgScopeId"),
            properties.get("env"),
        )
        result = await self.forwarder.forward(
            method="POST",
            url=url,
            auth_token=api_key,
            json_body=self.build_downstream_body(payload, identifier),
            wants_stream=wants_stream,
            request_id=request_id,
        )
        return await self.relay(result, request_id=request_id)

    async def relay(self, result: ForwardResult, request_id: str = "-") -> Response:
        headers, repeated = _build_headers(result.headers)
        body = result.body
        if not isinstance(body, Streamed):
            response = Response(
                content=body.content,
                status_code=result.status,
                headers=headers,
            )
            return _apply_repeated(response, repeated)

        iterator = body.iter_bytes()
        try:
            first_chunk = await anext(iterator, b"")
        except (httpx.HTTPError, httpx.StreamError) as exc:
            await iterator.aclose()
            logger.error(
                "model_proxy_stream_failed request_id=%s stage=first_chunk error=%s",
                request_id,
                str(exc) or repr(exc),
            )
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={
                    "error": "Upstream stream failed",
                    "details": str(exc) or repr(exc),
                },
            )

        async def stream_generator() -> AsyncIterator[bytes]:
            try:
                if first_chunk:
                    yield first_chunk
                async for chunk in iterator:
                    yield chunk
            except (httpx.HTTPError, httpx.StreamError) as exc:
                logger.error(
                    "model_proxy_stream_failed request_id=%s stage=relay error=%s",
                    request_id,
                    str(exc) or repr(exc),
                )
            finally:
                await iterator.aclose()

        present = {name.lower() for name in headers} | {
            name.lower() for name, _ in repeated
        }
        for name, value in SSE_DEFAULT_HEADERS.items():
            if name not in present:
                headers[name] = value
        response = StreamingResponse(
            content=stream_generator(),
            status_code=result.status,
            headers=headers,
        )
        return _apply_repeated(response, repeated)
