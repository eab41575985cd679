from __future__ import annotations

import logging

from calliope_proxy.search.base import ContextItem, SearchOptions, SearchProvider
from calliope_proxy.search.searchapi import SearchApiProvider
from calliope_proxy.search.tavily import TavilySearchProvider
from calliope_proxy.settings import Settings

logger = logging.getLogger("uvicorn.error")

SEARCH_PROVIDER_NAMES = ("tavily", "searchapi")


class SearchConfigurationError(RuntimeError):
    pass


class SearchService:
    def __init__(self, provider: SearchProvider) -> None:
        self.provider = provider

    @property
    def provider_name(self) -> str:
        return self.provider.name

    async def search(
        self, query: str, options: SearchOptions | None = None
    ) -> list[ContextItem]:
        return await self.provider.search(query, options)

    async def close(self) -> None:
        await self.provider.close()


def _build_provider(name: str, settings: Settings) -> SearchProvider:
    if name == "tavily":
        if not settings.tavily_api_key:
            raise SearchConfigurationError(
                "SEARCH_PROVIDER=tavily requires TAVILY_API_KEY to be set."
            )
        return TavilySearchProvider(
            settings.tavily_api_key, timeout_seconds=settings.search_timeout_seconds
        )
    if name == "searchapi":
        if not settings.searchapi_api_key:
            raise SearchConfigurationError(
                "SEARCH_PROVIDER=searchapi requires SEARCHAPI_API_KEY to be set."
            )
        return SearchApiProvider(
            settings.searchapi_api_key, timeout_seconds=settings.search_timeout_seconds
        )
    raise SearchConfigurationError(
        f"Unsupported search provider type: {name}. "
        f"Expected one of: {', '.join(SEARCH_PROVIDER_NAMES)}."
    )


def build_search_service(settings: Settings) -> SearchService | None:
    """Pick the search backend once; Tavily wins when both keys are present."""
    forced = (settings.search_provider or "").strip().lower()
    if forced:
        provider = _build_provider(forced, settings)
    elif settings.tavily_api_key:
        provider = _build_provider("tavily", settings)
    elif settings.searchapi_api_key:
        provider = _build_provider("searchapi", settings)
    else:
        logger.warning(
            "search_disabled reason=no_api_key hint=set TAVILY_API_KEY or SEARCHAPI_API_KEY"
        )
        return None
    logger.info("search_provider_selected provider=%s", provider.name)
    return SearchService(provider)
