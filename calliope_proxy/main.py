from __future__ import annotations

import logging
import traceback
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from calliope_proxy.catalogs.core import load_provider_catalog
from calliope_proxy.crawl.fetcher import PlaywrightPageFetcher
from calliope_proxy.crawl.models import CrawlOptions, CrawlStartError
from calliope_proxy.crawl.orchestrator import CrawlOrchestrator
from calliope_proxy.gateway.analytics import log_analytics_event, validate_analytics_event
from calliope_proxy.gateway.auth import BearerAuthenticator, HeaderSetAuthenticator
from calliope_proxy.gateway.errors import ClientValidationError
from calliope_proxy.gateway.model_proxy import ModelProxyEndpoint, ModelProxyService
from calliope_proxy.gateway.proxy import RequestForwarder
from calliope_proxy.indexing.embeddings import build_embedder
from calliope_proxy.indexing.vector_store import ChromaVectorIndex
from calliope_proxy.observability import setup_optional_tracing
from calliope_proxy.search.base import SearchOptions, SearchProviderError
from calliope_proxy.search.service import SearchService, build_search_service
from calliope_proxy.settings import get_settings
from calliope_proxy.tools.markdown import MarkdownConverter
from calliope_proxy.tools.mcp_client import ToolClientRegistry

BEARER_AUTH_PREFIXES = ("/model-proxy", "/proxy")
HEADER_SET_AUTH_PREFIXES = ("/web", "/api/web", "/crawl", "/api/crawl")

app = FastAPI(
    title="Calliope Proxy",
    description="Gateway for model providers, web search and site crawling.",
    version="0.1.0",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger("uvicorn.error")


def _matches_prefix(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in prefixes)


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    path = request.url.path
    logger.debug("request_received method=%s path=%s", request.method, path)
    if request.method == "OPTIONS":
        return await call_next(request)

    authenticator: BearerAuthenticator | HeaderSetAuthenticator | None = None
    if _matches_prefix(path, BEARER_AUTH_PREFIXES):
        authenticator = getattr(app.state, "bearer_authenticator", None)
    elif _matches_prefix(path, HEADER_SET_AUTH_PREFIXES):
        authenticator = getattr(app.state, "header_set_authenticator", None)

    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            logger.info("auth_rejected method=%s path=%s", request.method, path)
            return auth_error

    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    catalog = load_provider_catalog(settings.provider_catalog_path)
    forwarder = RequestForwarder(
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
    )
    tool_registry = ToolClientRegistry(
        connect_timeout_seconds=settings.tool_connect_timeout_seconds
    )
    page_fetcher = PlaywrightPageFetcher(
        headless=settings.crawl_headless,
        navigation_timeout_seconds=settings.crawl_navigation_timeout_seconds,
    )
    embedder = build_embedder(settings)
    index = ChromaVectorIndex(embedder) if embedder is not None else None

    app.state.settings = settings
    app.state.provider_catalog = catalog
    app.state.forwarder = forwarder
    app.state.model_proxy = ModelProxyService(catalog=catalog, forwarder=forwarder)
    app.state.tool_registry = tool_registry
    app.state.page_fetcher = page_fetcher
    app.state.vector_index = index
    app.state.crawler = CrawlOrchestrator(
        fetcher=page_fetcher,
        content_transformer=MarkdownConverter(
            tool_registry, settings.markitdown_service_url
        ),
        index=index,
        max_concurrency=settings.crawl_max_concurrency,
        fetch_retries=settings.crawl_max_fetch_retries,
        request_timeout_seconds=settings.crawl_request_timeout_seconds,
    )
    app.state.search_service = build_search_service(settings)
    app.state.bearer_authenticator = BearerAuthenticator()
    app.state.header_set_authenticator = HeaderSetAuthenticator()
    setup_optional_tracing(
        app_obj=app,
        clients=[forwarder.client],
        settings=settings,
    )
    logger.info(
        (
            "startup complete environment=%s providers=%d search_provider=%s "
            "index_enabled=%s markitdown_url=%s"
        ),
        settings.environment,
        len(catalog.providers),
        app.state.search_service.provider_name if app.state.search_service else None,
        index is not None,
        settings.markitdown_service_url,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    search_service: SearchService | None = getattr(app.state, "search_service", None)
    if search_service is not None:
        await search_service.close()
    tool_registry: ToolClientRegistry | None = getattr(
        app.state, "tool_registry", None
    )
    if tool_registry is not None:
        await tool_registry.close()
    page_fetcher: PlaywrightPageFetcher | None = getattr(
        app.state, "page_fetcher", None
    )
    if page_fetcher is not None:
        await page_fetcher.close()
    index: ChromaVectorIndex | None = getattr(app.state, "vector_index", None)
    if index is not None:
        await index.close()
    forwarder: RequestForwarder = app.state.forwarder
    await forwarder.close()
    logger.info("shutdown complete")


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or uuid4().hex[:12]


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ClientValidationError({"error": f"Expected JSON body: {exc}"}) from exc
    if not isinstance(payload, dict):
        raise ClientValidationError({"error": "Expected a JSON object request body."})
    return payload


def _optional_int(payload: dict[str, Any], field_name: str, default: int) -> int:
    value = payload.get(field_name)
    if value is None or value == "":
        return default
    if isinstance(value, bool) or (
        isinstance(value, float) and not value.is_integer()
    ):
        raise ClientValidationError({"error": f"{field_name} must be an integer."})
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ClientValidationError(
            {"error": f"{field_name} must be an integer."}
        ) from exc


@app.get("/")
async def health() -> dict[str, str]:
    return {"message": "Server is running and healthy!"}


async def _web_search(request: Request) -> Response:
    payload = await _read_json_object(request)
    query = payload.get("query")
    if not query:
        raise ClientValidationError({"error": "Missing required parameter: query"})

    service: SearchService | None = app.state.search_service
    if service is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": (
                    "Web search is not configured. Set TAVILY_API_KEY or "
                    "SEARCHAPI_API_KEY."
                )
            },
        )

    max_results = _optional_int(payload, "n", 0)
    options = SearchOptions(max_results=max_results) if max_results > 0 else None
    request_id = _request_id(request)
    logger.info(
        "web_search request_id=%s provider=%s query_chars=%d n=%s",
        request_id,
        service.provider_name,
        len(str(query)),
        max_results or None,
    )
    try:
        items = await service.search(str(query), options)
    except SearchProviderError as exc:
        logger.error(
            "web_search_failed request_id=%s status_code=%s error=%s",
            request_id,
            exc.status_code,
            exc,
        )
        if exc.status_code == status.HTTP_401_UNAUTHORIZED:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"error": "Search API authentication failed. Check API key."},
            )
        if exc.status_code == status.HTTP_400_BAD_REQUEST:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": f"Search API bad request: {exc}"},
            )
        return _web_search_failed(exc, query)
    except Exception as exc:
        logger.exception("web_search_failed request_id=%s", request_id)
        return _web_search_failed(exc, query)

    return JSONResponse(content=[item.to_response() for item in items])


def _web_search_failed(exc: Exception, query: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Web search failed.",
            "message": str(exc) or exc.__class__.__name__,
            "query": query,
        },
    )


@app.post("/web")
async def web_search(request: Request) -> Response:
    return await _web_search(request)


@app.post("/api/web")
async def api_web_search(request: Request) -> Response:
    return await _web_search(request)


async def _crawl(request: Request) -> Response:
    payload = await _read_json_object(request)
    start_url = payload.get("startUrl")
    if not start_url:
        raise ClientValidationError({"error": "Missing required parameter: startUrl"})

    settings = app.state.settings
    options = CrawlOptions(
        start_url=str(start_url),
        max_depth=_optional_int(payload, "maxDepth", settings.crawl_default_max_depth),
        max_requests=_optional_int(payload, "limit", settings.crawl_default_limit),
    )
    crawler: CrawlOrchestrator = app.state.crawler
    try:
        pages = await crawler.launch_crawl(options)
    except CrawlStartError as exc:
        raise ClientValidationError({"error": str(exc)}) from exc
    return JSONResponse(content=[page.to_response() for page in pages])


@app.post("/crawl")
async def crawl(request: Request) -> Response:
    return await _crawl(request)


@app.post("/api/crawl")
async def api_crawl(request: Request) -> Response:
    return await _crawl(request)


async def _proxy_model_request(request: Request, endpoint: ModelProxyEndpoint) -> Response:
    payload = await _read_json_object(request)
    service: ModelProxyService = app.state.model_proxy
    return await service.handle(endpoint, payload, request_id=_request_id(request))


@app.post("/model-proxy/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _proxy_model_request(request, ModelProxyEndpoint.CHAT_COMPLETIONS)


@app.post("/model-proxy/v1/completions")
async def completions(request: Request) -> Response:
    return await _proxy_model_request(request, ModelProxyEndpoint.COMPLETIONS)


@app.post("/model-proxy/v1/embeddings")
async def embeddings(request: Request) -> Response:
    return await _proxy_model_request(request, ModelProxyEndpoint.EMBEDDINGS)


@app.post("/model-proxy/v1/rerank")
async def rerank(request: Request) -> Response:
    return await _proxy_model_request(request, ModelProxyEndpoint.RERANK)


@app.post("/proxy/analytics/{workspace_id}/capture")
async def capture_analytics(workspace_id: str, request: Request) -> dict[str, Any]:
    payload = await _read_json_object(request)
    log_analytics_event(validate_analytics_event(workspace_id, payload))
    return {}


@app.exception_handler(ClientValidationError)
async def client_validation_handler(
    _: Request, exc: ClientValidationError
) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.content)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception method=%s path=%s error_type=%s error=%s",
        request.method,
        request.url.path,
        exc.__class__.__name__,
        exc,
        exc_info=exc,
    )
    content: dict[str, Any] = {
        "status": "error",
        "message": "Something went very wrong!",
    }
    if get_settings().is_development:
        content["message"] = str(exc) or exc.__class__.__name__
        content["stack"] = "".join(traceback.format_exception(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content
    )


def run() -> None:
    import uvicorn

    uvicorn.run(
        "calliope_proxy.main:app",
        host="0.0.0.0",
        port=get_settings().port,
        reload=False,
    )


if __name__ == "__main__":
    run()
