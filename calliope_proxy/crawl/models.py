from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

ALLOWED_URL_SCHEMES = ("http", "https")


class CrawlStartError(ValueError):
    """Raised when a crawl cannot start; per-page failures never raise."""


@dataclass(frozen=True, slots=True)
class CrawlTask:
    url: str
    depth: int


@dataclass(frozen=True, slots=True)
class CrawlOptions:
    start_url: str
    max_depth: int = 2
    max_requests: int = 50

    def validate(self) -> None:
        parsed = urlparse(self.start_url or "")
        if parsed.scheme not in ALLOWED_URL_SCHEMES or not parsed.netloc:
            raise CrawlStartError(
                f"Start URL must be an absolute http(s) URL, got '{self.start_url}'."
            )
        if self.max_depth < 0:
            raise CrawlStartError(f"maxDepth must be >= 0, got {self.max_depth}.")
        if self.max_requests < 1:
            raise CrawlStartError(f"limit must be >= 1, got {self.max_requests}.")


@dataclass(slots=True)
class CrawledPage:
    url: str
    path: str
    title: str | None = None
    raw_extract: str | None = None
    markdown_content: str | None = None
    error: str | None = None

    def append_error(self, message: str) -> None:
        if self.error:
            self.error = f"{self.error}; {message}"
        else:
            self.error = message

    @property
    def content(self) -> str:
        return self.markdown_content or self.raw_extract or ""

    def to_response(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "url": self.url,
            "path": self.path,
            "content": self.content,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class PageExtract:
    title: str | None
    raw_extract: str
    links: list[str] = field(default_factory=list)


def url_path(url: str) -> str:
    return urlparse(url).path or "/"
