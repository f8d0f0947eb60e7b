"""Global pytest hooks for strict test-accounting guardrails, plus shared fakes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

import pytest

from ragspider.document import DiscoveredLink, ExtractionResult, FetchedPage
from ragspider.settings import CrawlSettings


@dataclass
class _TestAccounting:
    deselected: int = 0
    skipped: int = 0
    xfailed: int = 0
    xpassed: int = 0


_ACCOUNTING = _TestAccounting()


def pytest_deselected(items):  # pragma: no cover - pytest hook
    _ACCOUNTING.deselected += len(items)


def pytest_runtest_logreport(report):  # pragma: no cover - pytest hook
    if report.when not in {"setup", "call"}:
        return

    if getattr(report, "wasxfail", False):
        if report.outcome == "skipped":
            _ACCOUNTING.xfailed += 1
        elif report.outcome == "passed":
            _ACCOUNTING.xpassed += 1
        return

    if report.outcome == "skipped":
        _ACCOUNTING.skipped += 1


def pytest_sessionfinish(session, exitstatus):  # pragma: no cover - pytest hook
    violations = [
        f"{name}={count}"
        for name, count in (
            ("deselected", _ACCOUNTING.deselected),
            ("skipped", _ACCOUNTING.skipped),
            ("xfailed", _ACCOUNTING.xfailed),
            ("xpassed", _ACCOUNTING.xpassed),
        )
        if count
    ]
    if not violations:
        return

    reporter = session.config.pluginmanager.get_plugin("terminalreporter")
    if reporter:
        reporter.write_sep(
            "=",
            "Strict guard failed: test accounting violations detected "
            f"({', '.join(violations)})",
        )
    session.exitstatus = 1


# ---------------------------------------------------------------------------
# Shared fakes
# ---------------------------------------------------------------------------

Outcome = Union[FetchedPage, BaseException]


def make_page(
    url: str,
    links: Sequence[str] = (),
    *,
    body: Optional[str] = None,
    title: str = "Page",
) -> FetchedPage:
    """A fetched page whose HTML is long enough to pass every length check."""
    text = body if body is not None else f"Documentation for {url}. " * 20
    return FetchedPage(
        url=url,
        final_url=url,
        html=f"<html><head><title>{title}</title></head><body>{text}</body></html>",
        title=title,
        status_code=200,
        links=[DiscoveredLink(href=href) for href in links],
    )


class FakeFetcher:
    """Stands in for BrowserFetcher; outcomes are served per URL in order."""

    def __init__(self, outcomes: Optional[Dict[str, Union[Outcome, List[Outcome]]]] = None):
        self.outcomes: Dict[str, List[Outcome]] = {}
        for url, outcome in (outcomes or {}).items():
            self.outcomes[url] = list(outcome) if isinstance(outcome, list) else [outcome]
        self.calls: List[str] = []
        self.proxies: List[Optional[str]] = []
        self.entered = False
        self.exited = False

    async def __aenter__(self):
        self.entered = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.exited = True

    def set_proxy(self, proxy_url):
        self.proxies.append(proxy_url)

    async def fetch(self, url: str) -> FetchedPage:
        self.calls.append(url)
        queue = self.outcomes.get(url)
        if not queue:
            return make_page(url)
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class PlainTextExtractor:
    """Extractor that strips tags with a regex; no browser stack involved."""

    def __init__(self):
        self.calls: List[Optional[int]] = []
        self.cleared = 0

    def extract(self, html, url, *, min_content_length=None):
        import re

        self.calls.append(min_content_length)
        text = re.sub(r"<[^>]+>", " ", html or "")
        text = " ".join(text.split())
        threshold = min_content_length or 0
        if len(text) < threshold:
            return ExtractionResult(success=False, text=text, error="Content too short")
        return ExtractionResult(success=True, text=text, title="Extracted")

    def clear_cache(self):
        self.cleared += 1


async def no_sleep(_seconds):
    return None


@pytest.fixture
def settings() -> CrawlSettings:
    return CrawlSettings(
        start_urls=["https://docs.example.com/"],
        max_crawl_depth=2,
        max_concurrency=2,
        wait_for_dynamic_content=False,
        request_handler_timeout=5.0,
    )


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def extractor() -> PlainTextExtractor:
    return PlainTextExtractor()
