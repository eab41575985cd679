from __future__ import annotations

from typing import Any

import httpx

from calliope_proxy.search.base import (
    ContextItem,
    SearchOptions,
    SearchProviderError,
    first_text,
    raise_for_provider_status,
)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
TAVILY_TOPICS = {"general", "news", "finance"}
TAVILY_TIME_RANGES = {"day", "week", "month", "year"}
DEFAULT_MAX_RESULTS = 10


class TavilySearchProvider:
    name = "Tavily"

    def __init__(
        self,
        api_key: str,
        timeout_seconds: float = 20.0,
        search_url: str = TAVILY_SEARCH_URL,
    ) -> None:
        if not api_key:
            raise ValueError("Tavily API key is required")
        self._api_key = api_key
        self.search_url = search_url
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    def build_payload(self, query: str, options: SearchOptions | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "query": query,
            "topic": "general",
            "max_results": DEFAULT_MAX_RESULTS,
            "include_raw_content": False,
        }
        if options is None:
            return payload
        if options.max_results:
            payload["max_results"] = options.max_results
        if options.topic == "technical":
            payload["search_depth"] = "advanced"
        elif options.topic in TAVILY_TOPICS:
            payload["topic"] = options.topic
        if options.time_range in TAVILY_TIME_RANGES:
            payload["time_range"] = options.time_range
        return payload

    async def search(
        self, query: str, options: SearchOptions | None = None
    ) -> list[ContextItem]:
        response = await self.client.post(
            self.search_url,
            json=self.build_payload(query, options),
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        raise_for_provider_status(self.name, response)
        body = response.json()
        if isinstance(body, dict) and body.get("error"):
            raise SearchProviderError(f"Tavily search error: {body['error']}")
        results = body.get("results") if isinstance(body, dict) else None
        items: list[ContextItem] = []
        for result in results or []:
            if not isinstance(result, dict):
                continue
            snippet = first_text(result, "content")
            items.append(
                ContextItem(
                    name=first_text(result, "title"),
                    description=snippet,
                    content=first_text(result, "raw_content", "content"),
                    uri=first_text(result, "url") or None,
                )
            )
        return items

    async def close(self) -> None:
        await self.client.aclose()
