"""Documentation-site crawler that turns pages into RAG-ready chunk records.

It supports:

- Glob and depth based link admission
- Concurrent page visits through a headless browser (Crawl4AI)
- Retries, skip-on-failure, proxy rotation and memory recovery
- Run statistics

Example usage:

    from ragspider import CrawlSettings, MemorySink, crawl_async

    settings = CrawlSettings(
        start_urls=["https://docs.example.com/"],
        include_url_globs=["https://docs.example.com/**"],
        max_crawl_depth=2,
    )
    sink = MemorySink()
    stats = await crawl_async(settings, sink=sink)
    print(stats.summary())
    for record in sink.successful:
        print(record["url"], record["chunk_index"], record["content"][:80])
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Optional

from .document import Chunk, CrawlTarget, ExtractionResult, FetchedPage, ProcessingResult
from .errors import (
    ConfigError,
    CrawlInitializationError,
    CrawlerError,
    ErrorCategory,
    ErrorSeverity,
    FailureKind,
    PageFetchError,
    RagSpiderError,
    classify_error,
)
from .frontier import FilterDecision, FilterReason, UrlFilter
from .orchestrator import CrawlOrchestrator, PageState
from .retry import ErrorHandler, RetryPolicy, SkippedOperation
from .settings import CrawlSettings, ErrorHandlingSettings, validate_settings
from .sink import JsonLinesSink, MemorySink, ResultSink
from .stats import CrawlingStats

__all__ = [
    # Settings
    "CrawlSettings",
    "ErrorHandlingSettings",
    "validate_settings",
    # Data types
    "Chunk",
    "CrawlTarget",
    "ExtractionResult",
    "FetchedPage",
    "ProcessingResult",
    "FilterDecision",
    "FilterReason",
    # Errors
    "RagSpiderError",
    "ConfigError",
    "CrawlInitializationError",
    "CrawlerError",
    "PageFetchError",
    "ErrorCategory",
    "ErrorSeverity",
    "FailureKind",
    "classify_error",
    # Components
    "UrlFilter",
    "RetryPolicy",
    "ErrorHandler",
    "SkippedOperation",
    "CrawlingStats",
    "CrawlOrchestrator",
    "PageState",
    "ResultSink",
    "MemorySink",
    "JsonLinesSink",
    # Entry points
    "crawl",
    "crawl_async",
]


async def crawl_async(
    settings: CrawlSettings,
    *,
    start_urls: Optional[Iterable[str]] = None,
    sink: Optional[ResultSink] = None,
    **components: Any,
) -> CrawlingStats:
    """Validate settings, run a crawl to completion and release the browser.

    Extra keyword arguments (``fetcher``, ``extractor``, ``processor``,
    ``stats``, ``error_handler``, ``sleep``) are passed to
    ``CrawlOrchestrator``.
    """
    if start_urls is not None:
        settings = settings.with_overrides(start_urls=list(start_urls))

    async with CrawlOrchestrator(settings, sink=sink, **components) as orchestrator:
        return await orchestrator.run()


def crawl(
    settings: CrawlSettings,
    *,
    start_urls: Optional[Iterable[str]] = None,
    sink: Optional[ResultSink] = None,
    **components: Any,
) -> CrawlingStats:
    """Synchronous wrapper for crawl_async."""
    return asyncio.run(
        crawl_async(settings, start_urls=start_urls, sink=sink, **components)
    )
