from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from playwright.async_api import Browser, Playwright, async_playwright

logger = logging.getLogger("uvicorn.error")

BROWSER_LAUNCH_ARGS = ["--disable-gpu", "--no-sandbox", "--disable-dev-shm-usage"]


@dataclass(slots=True)
class FetchedPage:
    html: str
    final_url: str
    title: str | None = None
    body_text: str | None = None


class PageFetcher(Protocol):
    async def fetch(self, url: str) -> FetchedPage: ...

    async def close(self) -> None: ...


class PlaywrightPageFetcher:
    """Headless Chromium fetcher; the browser is launched on first use."""

    def __init__(
        self,
        headless: bool = True,
        navigation_timeout_seconds: float = 60.0,
    ) -> None:
        self.headless = headless
        self.navigation_timeout_ms = max(1.0, navigation_timeout_seconds) * 1000.0
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._launch_lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        if self._browser is not None and self._browser.is_connected():
            return self._browser
        async with self._launch_lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=BROWSER_LAUNCH_ARGS,
            )
            logger.info("crawl_browser_launched headless=%s", self.headless)
            return self._browser

    async def fetch(self, url: str) -> FetchedPage:
        browser = await self._ensure_browser()
        context = await browser.new_context()
        try:
            page = await context.new_page()
            response = await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.navigation_timeout_ms,
            )
            if response is not None and response.status >= 400:
                raise RuntimeError(
                    f"Request failed with status code {response.status}"
                )
            body_text: Any = await page.evaluate(
                "() => document.body ? document.body.innerText : ''"
            )
            return FetchedPage(
                html=await page.content(),
                final_url=page.url,
                title=await page.title(),
                body_text=body_text if isinstance(body_text, str) else None,
            )
        finally:
            await context.close()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
