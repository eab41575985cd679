from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Protocol

from calliope_proxy.crawl.extract import extract_page
from calliope_proxy.crawl.fetcher import FetchedPage, PageFetcher
from calliope_proxy.crawl.models import CrawledPage, CrawlOptions, CrawlTask, url_path
from calliope_proxy.indexing.vector_store import (
    DocumentIndex,
    IndexedDocument,
    ScoredDocument,
)

logger = logging.getLogger("uvicorn.error")


class ContentTransformer(Protocol):
    async def convert(self, html: str) -> str: ...


@dataclass(slots=True)
class _CrawlRun:
    options: CrawlOptions
    queue: asyncio.Queue[CrawlTask] = field(default_factory=asyncio.Queue)
    seen: set[str] = field(default_factory=set)
    results: list[CrawledPage] = field(default_factory=list)
    claimed: int = 0

    def enqueue(self, url: str, depth: int) -> bool:
        if url in self.seen:
            return False
        self.seen.add(url)
        self.queue.put_nowait(CrawlTask(url=url, depth=depth))
        return True

    def has_link_budget(self) -> bool:
        max_requests = self.options.max_requests
        if len(self.results) >= max_requests:
            return False
        return self.claimed + self.queue.qsize() < max_requests


class CrawlOrchestrator:
    def __init__(
        self,
        fetcher: PageFetcher,
        content_transformer: ContentTransformer,
        index: DocumentIndex | None = None,
        max_concurrency: int = 5,
        fetch_retries: int = 1,
        request_timeout_seconds: float = 60.0,
    ) -> None:
        self.fetcher = fetcher
        self.content_transformer = content_transformer
        self.index = index
        self.max_concurrency = max(1, int(max_concurrency))
        self.fetch_retries = max(0, int(fetch_retries))
        self.request_timeout_seconds = max(0.1, float(request_timeout_seconds))

    async def launch_crawl(self, options: CrawlOptions) -> list[CrawledPage]:
        options.validate()
        started = time.perf_counter()
        logger.info(
            "crawl_started start_url=%s max_depth=%d max_requests=%d workers=%d",
            options.start_url,
            options.max_depth,
            options.max_requests,
            self.max_concurrency,
        )
        run = _CrawlRun(options=options)
        run.enqueue(options.start_url, 0)
        workers = [
            asyncio.create_task(self._worker(run), name=f"crawl-worker-{idx}")
            for idx in range(self.max_concurrency)
        ]
        try:
            await run.queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        logger.info(
            "crawl_finished start_url=%s pages=%d errors=%d elapsed_ms=%.2f",
            options.start_url,
            len(run.results),
            sum(1 for page in run.results if page.error),
            (time.perf_counter() - started) * 1000.0,
        )
        return run.results

    async def _worker(self, run: _CrawlRun) -> None:
        while True:
            task = await run.queue.get()
            try:
                if task.depth > run.options.max_depth:
                    logger.debug(
                        "crawl_task_skipped url=%s depth=%d reason=depth",
                        task.url,
                        task.depth,
                    )
                    continue
                if run.claimed >= run.options.max_requests:
                    continue
                run.claimed += 1
                await self._process(run, task)
            finally:
                run.queue.task_done()

    async def _fetch(self, url: str) -> FetchedPage:
        errors: list[str] = []
        for attempt in range(1, self.fetch_retries + 2):
            try:
                return await asyncio.wait_for(
                    self.fetcher.fetch(url), timeout=self.request_timeout_seconds
                )
            except TimeoutError:
                errors.append(
                    f"Navigation timed out after {self.request_timeout_seconds:g} seconds"
                )
            except Exception as exc:
                errors.append(str(exc) or exc.__class__.__name__)
            logger.warning(
                "crawl_fetch_failed url=%s attempt=%d error=%s",
                url,
                attempt,
                errors[-1],
            )
        raise _FetchFailed(", ".join(dict.fromkeys(errors)))

    async def _process(self, run: _CrawlRun, task: CrawlTask) -> None:
        try:
            fetched = await self._fetch(task.url)
        except _FetchFailed as exc:
            run.results.append(
                CrawledPage(
                    url=task.url,
                    path=url_path(task.url),
                    error=f"Failed to crawl: {exc}",
                )
            )
            return

        final_url = fetched.final_url or task.url
        if final_url != task.url:
            if final_url in run.seen:
                logger.info(
                    "crawl_redirect_duplicate_skipped url=%s final_url=%s",
                    task.url,
                    final_url,
                )
                return
            run.seen.add(final_url)

        page = CrawledPage(url=final_url, path=url_path(final_url), title=fetched.title)
        links: list[str] = []
        try:
            extract = extract_page(
                fetched.html,
                final_url,
                title=fetched.title,
                body_text=fetched.body_text,
            )
        except Exception as exc:
            logger.error("crawl_extract_failed url=%s error=%s", final_url, exc)
            page.error = f"Failed to extract page content: {exc}"
        else:
            page.title = extract.title
            page.raw_extract = extract.raw_extract
            links = extract.links

        try:
            page.markdown_content = await self.content_transformer.convert(
                fetched.html
            )
        except Exception as exc:
            logger.error(
                "crawl_markdown_conversion_failed url=%s error=%s", final_url, exc
            )
            page.append_error(f"Failed to convert HTML to Markdown: {exc}")

        if page.markdown_content and self.index is not None:
            document = IndexedDocument(
                content=page.markdown_content,
                metadata={"url": page.url, "title": page.title, "path": page.path},
            )
            try:
                await self.index.add_documents([document])
            except Exception as exc:
                logger.error("crawl_index_add_failed url=%s error=%s", final_url, exc)
                page.append_error(f"Failed to add to vector store: {exc}")

        run.results.append(page)
        logger.info(
            "crawl_page_completed url=%s depth=%d completed=%d/%d",
            final_url,
            task.depth,
            len(run.results),
            run.options.max_requests,
        )

        if task.depth >= run.options.max_depth:
            return
        enqueued = 0
        for link in links:
            if not run.has_link_budget():
                logger.debug("crawl_link_budget_reached url=%s", final_url)
                break
            if run.enqueue(link, task.depth + 1):
                enqueued += 1
        if enqueued:
            logger.debug(
                "crawl_links_enqueued url=%s depth=%d count=%d",
                final_url,
                task.depth + 1,
                enqueued,
            )

    async def search_similar_documents(
        self, query: str, k: int = 5
    ) -> list[ScoredDocument]:
        if self.index is None:
            logger.warning("crawl_similarity_search_skipped reason=no_index")
            return []
        try:
            results = await self.index.similarity_search(query, k)
        except Exception as exc:
            logger.error("crawl_similarity_search_failed error=%s", exc)
            return []
        logger.info(
            "crawl_similarity_search query_chars=%d results=%d", len(query), len(results)
        )
        return results


class _FetchFailed(Exception):
    pass
