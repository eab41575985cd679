from __future__ import annotations

import re
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup

from calliope_proxy.crawl.models import ALLOWED_URL_SCHEMES, PageExtract

RAW_EXTRACT_LIMIT = 1000
_WHITESPACE_RUN = re.compile(r"\s\s+")


def collapse_snippet(text: str, limit: int = RAW_EXTRACT_LIMIT) -> str:
    return _WHITESPACE_RUN.sub(" ", text[:limit]).strip()


def extract_links(soup: BeautifulSoup, page_url: str) -> list[str]:
    """Absolute same-host http(s) links in document order, fragments removed."""
    base_host = urlparse(page_url).netloc
    links: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"]).strip()
        if not href:
            continue
        try:
            absolute, _ = urldefrag(urljoin(page_url, href))
            parsed = urlparse(absolute)
        except ValueError:
            continue
        if parsed.scheme not in ALLOWED_URL_SCHEMES or parsed.netloc != base_host:
            continue
        if absolute in seen:
            continue
        seen.add(absolute)
        links.append(absolute)
    return links


def extract_page(
    html: str,
    page_url: str,
    title: str | None = None,
    body_text: str | None = None,
) -> PageExtract:
    soup = BeautifulSoup(html, "html.parser")
    if not title and soup.title is not None:
        title = soup.title.get_text(strip=True)
    if body_text is None:
        body = soup.body
        body_text = body.get_text(" ") if body is not None else soup.get_text(" ")
    return PageExtract(
        title=title or None,
        raw_extract=collapse_snippet(body_text),
        links=extract_links(soup, page_url),
    )
