"""Crawl orchestration: frontier queue, worker pool and the per-page pipeline.

Each page moves through ``FETCHING -> EXTRACTING -> PROCESSING -> STORING
-> LINK_DISCOVERY -> DONE``. Content steps run through the shared
``ErrorHandler`` with their own operation id, so a failing step is retried
(when retryable) and then skipped without taking the page down. Only a
fetch that exhausts its browser-level retries, or a handler that overruns
``request_handler_timeout``, ends the page in ``FAILED``; that path goes
through ``handle_failed_request`` which may rotate the proxy or free memory.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .browser import BrowserFetcher
from .document import CrawlTarget, ExtractionResult, FetchedPage, ProcessingResult
from .errors import (
    CrawlInitializationError,
    CrawlerError,
    ErrorCategory,
    FailureKind,
    PageFetchError,
)
from .extraction import ContentExtractor
from .frontier import FilterReason, UrlFilter, normalize_url, origin_of
from .processing import TextProcessor
from .recovery import MEMORY_CLEANUP_PAUSE, ProxyPool, perform_memory_cleanup, rotate_proxy
from .retry import (
    SEVERITY_LOG_LEVELS,
    ErrorHandler,
    RetryPolicy,
    is_skipped,
    maybe_await,
)
from .settings import CrawlSettings, validate_settings
from .sink import MemorySink, Record, ResultSink, chunk_to_record, failure_record
from .stats import CrawlingStats

LOGGER = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class PageState(str, Enum):
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    PROCESSING = "processing"
    STORING = "storing"
    LINK_DISCOVERY = "link_discovery"
    DONE = "done"
    FAILED = "failed"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class CrawlOrchestrator:
    """Drive one crawl run.

    Collaborators default to the bundled implementations; anything with the
    same methods can be swapped in (the fetcher needs ``fetch(url)`` and
    ``set_proxy(url)``, and is entered as an async context manager when it
    is one).
    """

    def __init__(
        self,
        settings: CrawlSettings,
        *,
        fetcher: Any = None,
        extractor: Any = None,
        processor: Any = None,
        sink: Optional[ResultSink] = None,
        stats: Optional[CrawlingStats] = None,
        error_handler: Optional[ErrorHandler] = None,
        sleep: Optional[SleepFn] = None,
        memory_cleanup_pause: float = MEMORY_CLEANUP_PAUSE,
    ) -> None:
        self.settings = settings
        self._sleep = sleep or asyncio.sleep
        self.stats = stats or CrawlingStats()
        self.error_handler = error_handler or ErrorHandler(
            RetryPolicy.from_settings(settings.error_handling, sleep=self._sleep)
        )
        self.extractor = extractor or ContentExtractor(settings.min_content_length)
        # built in initialize(), once the chunk settings have been validated
        self.processor = processor
        self.sink = sink if sink is not None else MemorySink()
        self.url_filter = UrlFilter(
            include_globs=settings.include_url_globs,
            exclude_globs=settings.exclude_url_globs,
            max_depth=settings.max_crawl_depth,
        )
        self.proxy_pool = ProxyPool(list(settings.proxy_urls)) if settings.proxy_urls else None
        self.memory_cleanup_pause = memory_cleanup_pause
        self.fetcher = fetcher

        self._stack: Optional[AsyncExitStack] = None
        self._initialized = False
        self._queue: "asyncio.Queue[CrawlTarget]" = asyncio.Queue()
        self._seen: Set[str] = set()
        self.page_states: Dict[str, PageState] = {}

    async def __aenter__(self) -> "CrawlOrchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cleanup()

    async def initialize(self) -> None:
        """Validate settings and start the browser layer.

        Raises ``ConfigError`` for invalid settings and
        ``CrawlInitializationError`` when the browser cannot be started.
        """
        if self._initialized:
            return
        validate_settings(self.settings)

        if self.processor is None:
            self.processor = TextProcessor(
                chunk_size=self.settings.chunk_size,
                chunk_overlap=self.settings.chunk_overlap,
            )
        if self.fetcher is None:
            self.fetcher = BrowserFetcher(
                self.settings,
                error_handler=self.error_handler,
                on_warning=self._warn,
                proxy_url=self.proxy_pool.current if self.proxy_pool else None,
            )

        stack = AsyncExitStack()
        try:
            if hasattr(self.fetcher, "__aenter__"):
                await stack.enter_async_context(self.fetcher)
        except Exception as exc:
            await stack.aclose()
            raise CrawlInitializationError(
                f"Failed to initialize crawler: {exc}"
            ) from exc

        self._stack = stack
        self._initialized = True
        LOGGER.info(
            "Crawler initialized (max depth %d, concurrency %d)",
            self.settings.max_crawl_depth,
            self.settings.max_concurrency,
        )

    async def run(self, start_urls: Optional[Iterable[str]] = None) -> CrawlingStats:
        """Crawl from ``start_urls`` (default: the configured ones) until the frontier drains.

        An orchestrator runs once; its statistics are frozen when the run ends.
        """
        if self.stats.is_complete:
            raise RuntimeError(
                "CrawlOrchestrator has already completed a run; create a new one"
            )
        await self.initialize()
        urls = list(start_urls) if start_urls is not None else list(self.settings.start_urls)
        LOGGER.info("Starting crawl with %d start URL(s)", len(urls))

        for url in urls:
            normalized = normalize_url(url)
            if normalized is None:
                LOGGER.warning("Ignoring invalid start URL: %s", url)
                self.stats.add_warning("Invalid start URL", url)
                continue
            self._enqueue(CrawlTarget(normalized, 0, origin_of(normalized)))

        workers = [
            asyncio.create_task(self._worker(), name=f"ragspider-worker-{index}")
            for index in range(self.settings.max_concurrency)
        ]
        try:
            await self._queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            outcomes = await asyncio.gather(*workers, return_exceptions=True)
            for outcome in outcomes:
                if isinstance(outcome, Exception):
                    LOGGER.error("Crawl worker ended with an error: %r", outcome)
            self.stats.complete()

        LOGGER.info(
            "Crawl completed in %.1fs: %d pages processed, %d chunks",
            self.stats.get_duration(),
            self.stats.processed_pages,
            self.stats.extracted_chunks,
        )
        return self.stats

    async def cleanup(self) -> None:
        stack, self._stack = self._stack, None
        self._initialized = False
        if stack is not None:
            await stack.aclose()
            LOGGER.debug("Crawler resources released")

    def get_stats(self) -> Dict[str, Any]:
        summary = self.stats.summary()
        summary["error_handling"] = self.error_handler.get_error_stats()
        return summary

    def _enqueue(self, target: CrawlTarget) -> bool:
        if target.url in self._seen:
            return False
        if len(self._seen) >= self.settings.max_requests_per_crawl:
            LOGGER.debug("Request limit reached, dropping %s", target.url)
            return False
        self._seen.add(target.url)
        self._queue.put_nowait(target)
        return True

    async def _worker(self) -> None:
        while True:
            target = await self._queue.get()
            try:
                await self._visit(target)
            except Exception:
                LOGGER.exception("Unexpected error while visiting %s", target.url)
                self._set_state(target.url, PageState.FAILED)
            finally:
                self._queue.task_done()

    async def _visit(self, target: CrawlTarget) -> PageState:
        if self.settings.request_delay > 0 and self.stats.total_requests > 0:
            await self._sleep(self.settings.request_delay)
        self.stats.increment("total_requests")

        try:
            return await asyncio.wait_for(
                self.handle_page(target),
                timeout=self.settings.request_handler_timeout,
            )
        except asyncio.TimeoutError:
            error: Exception = PageFetchError(
                f"Request handler timed out after {self.settings.request_handler_timeout}s",
                FailureKind.HANDLER_TIMEOUT,
                url=target.url,
            )
        except Exception as exc:
            error = exc
        self._set_state(target.url, PageState.FAILED)
        await self.handle_failed_request(target, error)
        return PageState.FAILED

    async def handle_page(self, target: CrawlTarget) -> PageState:
        """Run the content pipeline for one page; returns its final state."""
        url = target.url
        LOGGER.info("Processing page: %s (depth %d)", url, target.depth)
        self._set_state(url, PageState.FETCHING)

        page = await self._fetch(target)
        title = page.title

        self._set_state(url, PageState.EXTRACTING)
        extraction = await self.error_handler.execute_with_error_handling(
            lambda: self._extract(page, self.settings.min_content_length, check_html=True),
            f"content-extraction-{url}",
            {"url": url},
        )
        if is_skipped(extraction):
            LOGGER.warning("Primary content extraction failed for %s, trying fallback", url)
            extraction = await self.error_handler.execute_with_error_handling(
                lambda: self._extract(page, self.settings.fallback_min_content_length),
                f"text-extraction-{url}",
                {"url": url, "fallback": True},
            )

        if is_skipped(extraction):
            await self._record_step_failure(url, title, "extraction", extraction.reason)
        else:
            title = extraction.title or title
            self._set_state(url, PageState.PROCESSING)
            processed = await self.error_handler.execute_with_error_handling(
                lambda: self._process(extraction.text, url, title),
                f"text-processing-{url}",
                {"url": url},
            )
            if is_skipped(processed):
                await self._record_step_failure(url, title, "processing", processed.reason)
            else:
                self._set_state(url, PageState.STORING)
                records = self._build_records(processed, url, title)
                stored = await self.error_handler.execute_with_error_handling(
                    lambda: self._store(records, url),
                    f"result-storage-{url}",
                    {"url": url},
                )
                if is_skipped(stored):
                    self.stats.add_error(f"Result storage failed: {stored.reason}", url)
                else:
                    self.stats.increment("processed_pages")
                    self.stats.increment("extracted_chunks", len(processed.chunks))
                    self.stats.increment("total_tokens", processed.total_tokens)

        self._set_state(url, PageState.LINK_DISCOVERY)
        discovered = await self.error_handler.execute_with_error_handling(
            lambda: self._discover_links(page, target),
            f"link-discovery-{url}",
            {"url": url},
        )
        if is_skipped(discovered):
            self._warn(f"Link discovery skipped: {discovered.reason}", url)

        self.stats.increment("successful_requests")
        return self._set_state(url, PageState.DONE)

    async def handle_failed_request(self, target: CrawlTarget, error: BaseException) -> None:
        """Record a page that ended in FAILED and run the matching recovery."""
        url = target.url
        crawler_error = CrawlerError.from_exception(
            error, {"url": url, "depth": target.depth}
        )
        self.stats.increment("failed_requests")
        self.stats.add_error(crawler_error.message, url)
        LOGGER.log(
            SEVERITY_LOG_LEVELS.get(crawler_error.severity, logging.WARNING),
            "Request failed for %s [%s]: %s",
            url,
            crawler_error.category.value,
            crawler_error.message,
        )
        await self._push_records(
            [failure_record(url, "", "request", crawler_error.message, _utcnow())], url
        )

        if crawler_error.category is ErrorCategory.RATE_LIMIT:
            await rotate_proxy(self.proxy_pool, self.fetcher)
        elif crawler_error.category is ErrorCategory.MEMORY:
            await perform_memory_cleanup(
                self._caches(), pause=self.memory_cleanup_pause
            )

    async def _fetch(self, target: CrawlTarget) -> FetchedPage:
        attempt = 0
        while True:
            try:
                return await self.fetcher.fetch(target.url)
            except Exception as exc:
                error = CrawlerError.from_exception(
                    exc, {"url": target.url, "retry_count": attempt}
                )
                if attempt >= self.settings.max_request_retries or not error.retryable:
                    if error is exc:
                        raise
                    raise error from exc
                attempt += 1
                LOGGER.info(
                    "Fetch of %s failed (%s), retry %d/%d",
                    target.url,
                    error.category.value,
                    attempt,
                    self.settings.max_request_retries,
                )
                await self._sleep(self.error_handler.retry_policy.calculate_delay(attempt))

    async def _extract(
        self, page: FetchedPage, min_length: int, *, check_html: bool = False
    ) -> ExtractionResult:
        html = page.html or ""
        if check_html and len(html) < self.settings.min_content_length:
            raise CrawlerError(
                f"Page content too short ({len(html)} characters)",
                ErrorCategory.EXTRACTION,
                context={"url": page.url},
            )
        result = await maybe_await(
            self.extractor.extract(html, page.final_url or page.url, min_content_length=min_length)
        )
        if not result.success or not (result.text or "").strip():
            raise CrawlerError(
                result.error or "Content extraction returned no text",
                ErrorCategory.EXTRACTION,
                context={"url": page.url},
            )
        return result

    async def _process(self, text: str, url: str, title: str) -> ProcessingResult:
        result = await maybe_await(self.processor.process(text, {"url": url, "title": title}))
        if not result.success or not result.chunks:
            raise CrawlerError(
                result.error or "Text processing produced no chunks",
                ErrorCategory.PROCESSING,
                context={"url": url},
            )
        return result

    def _build_records(self, processed: ProcessingResult, url: str, title: str) -> List[Record]:
        extracted_at = _utcnow()
        records = []
        for chunk in processed.chunks:
            record = chunk_to_record(chunk, url=url, title=title, extracted_at=extracted_at)
            record["metadata"].setdefault("original_length", processed.original_length)
            records.append(record)
        return records

    async def _store(self, records: List[Record], url: str) -> int:
        try:
            await maybe_await(self.sink.store(records))
        except Exception as exc:
            # storage is never retried, whatever the underlying error looks like
            raise CrawlerError(
                f"Failed to store results: {exc}",
                ErrorCategory.UNKNOWN,
                context={"url": url},
            ) from exc
        return len(records)

    async def _discover_links(self, page: FetchedPage, target: CrawlTarget) -> int:
        depth = target.depth + 1
        enqueued = 0
        for link in page.links:
            if not link.internal:
                continue
            decision = self.url_filter.should_crawl(link.href, depth)
            if not decision.allowed:
                if decision.reason is FilterReason.DEPTH_EXCEEDED:
                    self.stats.increment("depth_exceeded_urls")
                else:
                    self.stats.increment("filtered_urls")
                continue
            normalized = normalize_url(link.href)
            if normalized and self._enqueue(
                CrawlTarget(normalized, depth, target.origin or origin_of(normalized))
            ):
                enqueued += 1
        LOGGER.debug("Enqueued %d new link(s) from %s", enqueued, target.url)
        return enqueued

    async def _record_step_failure(self, url: str, title: str, step: str, reason: str) -> None:
        self._warn(f"{step.capitalize()} skipped: {reason}", url)
        await self._push_records([failure_record(url, title, step, reason, _utcnow())], url)

    async def _push_records(self, records: List[Record], url: str) -> None:
        try:
            await maybe_await(self.sink.store(records))
        except Exception as exc:
            LOGGER.error("Failed to store failure record for %s: %s", url, exc)
            self.stats.add_error(f"Failed to store failure record: {exc}", url)

    def _set_state(self, url: str, state: PageState) -> PageState:
        self.page_states[url] = state
        return state

    def _warn(self, message: str, url: str = "") -> None:
        if not self.stats.is_complete:
            self.stats.add_warning(message, url)

    def _caches(self) -> List[Any]:
        return [
            component
            for component in (self.processor, self.extractor)
            if hasattr(component, "clear_cache")
        ]
