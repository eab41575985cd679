from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict


class ContextItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: str
    name: str
    description: str
    uri: str | None = None
    editing: bool | None = None
    editable: bool | None = None
    icon: str | None = None
    hidden: bool | None = None
    status: str | None = None

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass(frozen=True, slots=True)
class SearchOptions:
    max_results: int | None = None
    topic: str | None = None
    time_range: str | None = None


class SearchProviderError(RuntimeError):
    """Failure reported by a search backend, carrying its HTTP status if any."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class SearchProvider(Protocol):
    name: str

    async def search(
        self, query: str, options: SearchOptions | None = None
    ) -> list[ContextItem]: ...

    async def close(self) -> None: ...


def raise_for_provider_status(provider: str, response: httpx.Response) -> None:
    if response.is_success:
        return
    raise SearchProviderError(
        f"{provider} request failed with status code {response.status_code}: "
        f"{response.text[:200]}",
        status_code=response.status_code,
    )


def first_text(item: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value:
            return value
    return ""
