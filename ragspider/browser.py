"""Browser layer: page fetching through Crawl4AI.

``BrowserFetcher`` owns one ``AsyncWebCrawler`` for the whole run and turns
each ``arun`` result into a ``FetchedPage`` or a categorized failure. When
dynamic-content waiting is enabled, a ``before_retrieve_html`` hook lets the
page settle (fixed wait plus a ``document.readyState`` check) before the
HTML is captured; the readiness check may time out without failing the page.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

from crawl4ai import AsyncWebCrawler, BrowserConfig, CrawlerRunConfig, ProxyConfig
from crawl4ai.async_configs import CacheMode
from crawl4ai.models import CrawlResult
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .document import DiscoveredLink, FetchedPage
from .errors import CrawlerError, FailureKind, PageFetchError, categorize_message
from .retry import ErrorHandler, is_skipped
from .settings import CrawlSettings

LOGGER = logging.getLogger(__name__)

READY_STATE_CHECK = "() => document.readyState === 'complete'"

# Chromium net:: error codes mapped onto failure kinds
_NET_ERROR_KINDS = (
    ("err_name_not_resolved", FailureKind.DNS_FAILURE),
    ("enotfound", FailureKind.DNS_FAILURE),
    ("err_connection_reset", FailureKind.CONNECTION_RESET),
    ("econnreset", FailureKind.CONNECTION_RESET),
    ("err_connection_refused", FailureKind.CONNECTION_REFUSED),
    ("econnrefused", FailureKind.CONNECTION_REFUSED),
    ("err_timed_out", FailureKind.NAVIGATION_TIMEOUT),
    ("timeout", FailureKind.NAVIGATION_TIMEOUT),
    ("out of memory", FailureKind.OUT_OF_MEMORY),
    ("target crashed", FailureKind.BROWSER_CRASH),
    ("browser has been closed", FailureKind.BROWSER_CRASH),
)

WarningCallback = Callable[[str, str], None]


def build_browser_config(settings: CrawlSettings) -> BrowserConfig:
    """Browser-wide options: headless mode, no persistent profile."""
    return BrowserConfig(
        headless=settings.headless,
        use_persistent_context=False,
        verbose=False,
    )


def build_page_run_config(
    settings: CrawlSettings, proxy_url: Optional[str] = None
) -> CrawlerRunConfig:
    """Per-visit run config; rebuilt each time so proxy swaps take effect."""
    kwargs: Dict[str, Any] = {
        "cache_mode": CacheMode.BYPASS,
        "page_timeout": int(settings.navigation_timeout * 1000),
        "verbose": False,
        "stream": False,
    }
    if proxy_url:
        kwargs["proxy_config"] = ProxyConfig(server=proxy_url)
    return CrawlerRunConfig(**kwargs)


def failure_kind_for(status_code: Optional[int], message: str) -> Optional[FailureKind]:
    if status_code == 429:
        return FailureKind.HTTP_TOO_MANY_REQUESTS
    if status_code is not None and status_code >= 500:
        return FailureKind.HTTP_SERVER_ERROR
    if status_code is not None and status_code >= 400:
        return FailureKind.HTTP_CLIENT_ERROR
    lowered = (message or "").lower()
    for needle, kind in _NET_ERROR_KINDS:
        if needle in lowered:
            return kind
    return None


def failure_from_result(result: CrawlResult, url: str) -> CrawlerError:
    """Turn an unsuccessful crawl result into a categorized error."""
    status_code = result.status_code or (result.metadata or {}).get("status_code")
    message = result.error_message or (
        f"HTTP {status_code}" if status_code else f"Crawler returned no content for {url}"
    )
    kind = failure_kind_for(status_code, message)
    if kind is not None:
        return PageFetchError(message, kind, url=url, status_code=status_code)
    return CrawlerError(
        message,
        categorize_message(message),
        context={"url": url, "status_code": status_code},
    )


def extract_links(links: Optional[Dict[str, List[Dict[str, Any]]]], base_url: str) -> List[DiscoveredLink]:
    """Flatten Crawl4AI's internal/external link buckets, dropping duplicates."""
    seen = set()
    discovered: List[DiscoveredLink] = []
    for bucket in ("internal", "external"):
        for entry in (links or {}).get(bucket, []) or []:
            href = (entry or {}).get("href")
            if not href:
                continue
            absolute = urljoin(base_url, href)
            if absolute in seen:
                continue
            seen.add(absolute)
            label = ((entry or {}).get("text") or "").strip()
            discovered.append(
                DiscoveredLink(href=absolute, label=label, internal=bucket == "internal")
            )
    return discovered


def page_from_result(result: CrawlResult, url: str) -> FetchedPage:
    metadata = dict(result.metadata or {})
    final_url = str(result.url or url)
    return FetchedPage(
        url=url,
        final_url=final_url,
        html=result.html or result.cleaned_html or "",
        title=(metadata.get("title") or "").strip(),
        status_code=result.status_code,
        links=extract_links(result.links, final_url),
        metadata=metadata,
    )


class BrowserFetcher:
    """Async context manager wrapping one Crawl4AI crawler for a run."""

    def __init__(
        self,
        settings: CrawlSettings,
        *,
        error_handler: Optional[ErrorHandler] = None,
        on_warning: Optional[WarningCallback] = None,
        proxy_url: Optional[str] = None,
        crawler_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.settings = settings
        self.error_handler = error_handler
        self.on_warning = on_warning
        self.proxy_url = proxy_url
        self._crawler_factory = crawler_factory or AsyncWebCrawler
        self._crawler: Any = None
        self._stack: Optional[AsyncExitStack] = None

    async def __aenter__(self) -> "BrowserFetcher":
        stack = AsyncExitStack()
        crawler = self._crawler_factory(config=build_browser_config(self.settings))
        self._crawler = await stack.enter_async_context(crawler)
        self._stack = stack
        if self.settings.wait_for_dynamic_content:
            try:
                self._crawler.crawler_strategy.set_hook(
                    "before_retrieve_html", self._settle_hook
                )
            except Exception:
                await self.__aexit__(None, None, None)
                raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        stack, self._stack = self._stack, None
        self._crawler = None
        if stack is not None:
            await stack.aclose()

    def set_proxy(self, proxy_url: Optional[str]) -> None:
        self.proxy_url = proxy_url

    async def fetch(self, url: str) -> FetchedPage:
        if self._crawler is None:
            raise RuntimeError("BrowserFetcher used outside its context")

        run_config = build_page_run_config(self.settings, proxy_url=self.proxy_url)
        container = await self._crawler.arun(url=url, config=run_config)
        try:
            result = container[0]
        except (IndexError, TypeError):
            result = container if isinstance(container, CrawlResult) else None

        if result is None:
            raise PageFetchError(
                f"Crawler returned no results for {url}",
                FailureKind.BROWSER_CRASH,
                url=url,
            )

        status_code = result.status_code
        if not result.success or (status_code is not None and status_code >= 400):
            raise failure_from_result(result, url)
        return page_from_result(result, url)

    async def _settle_hook(self, page: Any, context: Any = None, **kwargs: Any) -> Any:
        url = str(getattr(page, "url", "") or "")
        if self.error_handler is None:
            await self._wait_for_dynamic_content(page, url)
            return page

        outcome = await self.error_handler.execute_with_error_handling(
            lambda: self._wait_for_dynamic_content(page, url),
            f"dynamic-content-{url}",
            {"url": url},
        )
        if is_skipped(outcome) and self.on_warning is not None:
            self.on_warning(f"Dynamic content wait skipped: {outcome.reason}", url)
        return page

    async def _wait_for_dynamic_content(self, page: Any, url: str) -> None:
        await page.wait_for_timeout(self.settings.dynamic_content_wait * 1000)
        try:
            await page.wait_for_function(
                READY_STATE_CHECK,
                timeout=self.settings.readiness_timeout * 1000,
            )
        except PlaywrightTimeoutError:
            LOGGER.warning(
                "Dynamic content wait timeout for %s, proceeding anyway", url
            )
