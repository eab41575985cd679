from __future__ import annotations

import logging
from typing import Any

import httpx

from calliope_proxy.search.base import (
    ContextItem,
    SearchOptions,
    first_text,
    raise_for_provider_status,
)

SEARCHAPI_SEARCH_URL = "https://www.searchapi.io/api/v1/search"

logger = logging.getLogger("uvicorn.error")


class SearchApiProvider:
    name = "SearchAPI"

    def __init__(
        self,
        api_key: str,
        timeout_seconds: float = 20.0,
        search_url: str = SEARCHAPI_SEARCH_URL,
        engine: str = "google",
    ) -> None:
        if not api_key:
            raise ValueError("SearchAPI API key is required")
        self._api_key = api_key
        self.search_url = search_url
        self.engine = engine
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    @staticmethod
    def _result_rows(body: Any) -> list[dict[str, Any]]:
        if isinstance(body, list):
            rows = body
        elif isinstance(body, dict):
            rows = body.get("organic_results") or body.get("results") or []
        else:
            rows = []
        return [row for row in rows if isinstance(row, dict)]

    async def search(
        self, query: str, options: SearchOptions | None = None
    ) -> list[ContextItem]:
        params: dict[str, Any] = {"engine": self.engine, "q": query}
        if options is not None and options.max_results:
            params["num"] = options.max_results
        response = await self.client.get(
            self.search_url,
            params=params,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        raise_for_provider_status(self.name, response)
        rows = self._result_rows(response.json())
        items = [
            ContextItem(
                name=first_text(row, "title"),
                uri=first_text(row, "link") or None,
                description=first_text(row, "snippet", "description"),
                content=first_text(row, "content", "snippet", "description"),
            )
            for row in rows
        ]
        if options is not None and options.max_results:
            items = items[: options.max_results]
        logger.debug("searchapi_results query_chars=%d results=%d", len(query), len(items))
        return items

    async def close(self) -> None:
        await self.client.aclose()
