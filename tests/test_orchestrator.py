"""Tests for ragspider.orchestrator module."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from conftest import FakeFetcher, PlainTextExtractor, make_page, no_sleep
from ragspider.document import CrawlTarget, ProcessingResult
from ragspider.errors import (
    ConfigError,
    CrawlInitializationError,
    CrawlerError,
    ErrorCategory,
    FailureKind,
    PageFetchError,
)
from ragspider.orchestrator import CrawlOrchestrator, PageState
from ragspider.processing import TextProcessor
from ragspider.sink import MemorySink
from ragspider.stats import CrawlingStats

ROOT = "https://docs.example.com/"


def _orchestrator(settings, fetcher, **kwargs):
    kwargs.setdefault("extractor", PlainTextExtractor())
    kwargs.setdefault("sink", MemorySink())
    kwargs.setdefault("sleep", no_sleep)
    return CrawlOrchestrator(settings, fetcher=fetcher, **kwargs)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_crawl_with_filtering_and_depth_limit(self, settings):
        settings = settings.with_overrides(
            include_url_globs=["https://docs.example.com/guide/**"]
        )
        fetcher = FakeFetcher(
            {
                ROOT: make_page(
                    ROOT,
                    [
                        "https://docs.example.com/guide/a",
                        "https://docs.example.com/guide/b#section",
                        "https://docs.example.com/blog/x",
                        "https://docs.example.com/guide/manual.pdf",
                        "https://docs.example.com/about",
                    ],
                ),
                "https://docs.example.com/guide/a": make_page(
                    "https://docs.example.com/guide/a",
                    ["https://docs.example.com/guide/c", "https://docs.example.com/blog/y"],
                ),
            }
        )
        sink = MemorySink()
        orchestrator = _orchestrator(settings, fetcher, sink=sink)

        async with orchestrator:
            stats = await orchestrator.run()

        assert sorted(fetcher.calls) == [
            ROOT,
            "https://docs.example.com/guide/a",
            "https://docs.example.com/guide/b",
        ]
        assert stats.total_requests == 3
        assert stats.successful_requests == 3
        assert stats.failed_requests == 0
        assert stats.filtered_urls == 3
        assert stats.depth_exceeded_urls == 2
        assert stats.processed_pages == 3
        assert stats.extracted_chunks == len(sink.successful)
        assert stats.total_tokens > 0
        assert stats.get_success_rate() == 100.0
        assert stats.is_complete
        assert fetcher.entered and fetcher.exited
        assert set(orchestrator.page_states.values()) == {PageState.DONE}

        record = sink.successful[0]
        assert record["title"] == "Extracted"
        assert record["metadata"]["chunk_id"].endswith("#chunk-0")
        assert record["total_chunks"] >= 1

    @pytest.mark.asyncio
    async def test_duplicate_links_visited_once(self, settings):
        fetcher = FakeFetcher(
            {
                ROOT: make_page(ROOT, [ROOT + "a", ROOT + "a#x", ROOT + "a", ROOT]),
            }
        )
        orchestrator = _orchestrator(settings, fetcher)
        async with orchestrator:
            stats = await orchestrator.run()

        assert sorted(fetcher.calls) == [ROOT, ROOT + "a"]
        assert stats.total_requests == 2

    @pytest.mark.asyncio
    async def test_external_links_not_followed(self, settings):
        page = make_page(ROOT, ["https://other.example.org/"])
        page.links[0].internal = False
        fetcher = FakeFetcher({ROOT: page})

        async with _orchestrator(settings, fetcher) as orchestrator:
            stats = await orchestrator.run()

        assert fetcher.calls == [ROOT]
        assert stats.filtered_urls == 0

    @pytest.mark.asyncio
    async def test_max_requests_per_crawl(self, settings):
        settings = settings.with_overrides(max_requests_per_crawl=2)
        fetcher = FakeFetcher({ROOT: make_page(ROOT, [ROOT + "a", ROOT + "b", ROOT + "c"])})

        async with _orchestrator(settings, fetcher) as orchestrator:
            stats = await orchestrator.run()

        assert stats.total_requests == 2

    @pytest.mark.asyncio
    async def test_invalid_start_url_is_warned(self, settings):
        fetcher = FakeFetcher()
        async with _orchestrator(settings, fetcher) as orchestrator:
            stats = await orchestrator.run(["not-a-url", ROOT])

        assert fetcher.calls == [ROOT]
        assert stats.warnings[0]["message"] == "Invalid start URL"


class TestRequestDelay:
    @pytest.mark.asyncio
    async def test_delay_before_every_visit_but_first(self, settings):
        settings = settings.with_overrides(request_delay=0.5, max_concurrency=1)
        fetcher = FakeFetcher({ROOT: make_page(ROOT, [ROOT + "a", ROOT + "b"])})
        sleep = AsyncMock()

        async with _orchestrator(settings, fetcher, sleep=sleep) as orchestrator:
            await orchestrator.run()

        assert sleep.await_args_list == [call(0.5), call(0.5)]


class TestFetchFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_retried_then_succeeds(self, settings):
        error = PageFetchError("HTTP 503", FailureKind.HTTP_SERVER_ERROR, url=ROOT)
        fetcher = FakeFetcher({ROOT: [error, error, make_page(ROOT)]})
        sleep = AsyncMock()

        async with _orchestrator(settings, fetcher, sleep=sleep) as orchestrator:
            stats = await orchestrator.run()

        assert fetcher.calls == [ROOT, ROOT, ROOT]
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
        assert stats.successful_requests == 1
        assert stats.total_requests == 1

    @pytest.mark.asyncio
    async def test_validation_failure_not_retried(self, settings):
        fetcher = FakeFetcher(
            {ROOT: PageFetchError("HTTP 404", FailureKind.HTTP_CLIENT_ERROR, url=ROOT)}
        )
        sink = MemorySink()
        sleep = AsyncMock()

        async with _orchestrator(settings, fetcher, sink=sink, sleep=sleep) as orchestrator:
            stats = await orchestrator.run()

        assert fetcher.calls == [ROOT]
        sleep.assert_not_awaited()
        assert stats.failed_requests == 1
        assert stats.successful_requests == 0
        assert stats.errors[0] == {
            "message": "HTTP 404",
            "url": ROOT,
            "timestamp": stats.errors[0]["timestamp"],
        }
        assert sink.records[0]["status"] == "request_failed"
        assert orchestrator.page_states[ROOT] is PageState.FAILED

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, settings):
        settings = settings.with_overrides(max_request_retries=2)
        fetcher = FakeFetcher({ROOT: ConnectionResetError("ECONNRESET")})

        async with _orchestrator(settings, fetcher) as orchestrator:
            stats = await orchestrator.run()

        assert len(fetcher.calls) == 3
        assert stats.failed_requests == 1

    @pytest.mark.asyncio
    async def test_rate_limit_rotates_proxies_round_robin(self, settings):
        urls = [ROOT + "one", ROOT + "two", ROOT + "three"]
        settings = settings.with_overrides(
            start_urls=urls,
            proxy_urls=["http://a", "http://b", "http://c"],
            max_request_retries=0,
            max_concurrency=1,
        )
        fetcher = FakeFetcher(
            {
                url: PageFetchError("HTTP 429", FailureKind.HTTP_TOO_MANY_REQUESTS, url=url)
                for url in urls
            }
        )

        async with _orchestrator(settings, fetcher) as orchestrator:
            stats = await orchestrator.run()

        assert fetcher.proxies == ["http://b", "http://c", "http://a"]
        assert stats.failed_requests == 3
        assert orchestrator.proxy_pool.current_index == 0

    @pytest.mark.asyncio
    async def test_memory_failure_triggers_cleanup(self, settings):
        extractor = PlainTextExtractor()
        processor = TextProcessor()
        processor.estimate_tokens("warm the cache")
        fetcher = FakeFetcher(
            {ROOT: PageFetchError("out of memory", FailureKind.OUT_OF_MEMORY, url=ROOT)}
        )
        orchestrator = _orchestrator(
            settings,
            fetcher,
            extractor=extractor,
            processor=processor,
            memory_cleanup_pause=0,
        )

        async with orchestrator:
            stats = await orchestrator.run()

        assert stats.failed_requests == 1
        assert extractor.cleared == 1
        assert processor.cache_size == 0

    @pytest.mark.asyncio
    async def test_handler_timeout_fails_page(self, settings):
        settings = settings.with_overrides(request_handler_timeout=0.05)

        class SlowFetcher(FakeFetcher):
            async def fetch(self, url):
                await asyncio.sleep(10)

        async with _orchestrator(settings, SlowFetcher()) as orchestrator:
            stats = await orchestrator.run()

        assert stats.failed_requests == 1
        assert "timed out" in stats.errors[0]["message"]


class TestContentSteps:
    @pytest.mark.asyncio
    async def test_fallback_extraction_pass(self, settings, extractor):
        fetcher = FakeFetcher({ROOT: make_page(ROOT, body="y" * 70)})

        async with _orchestrator(settings, fetcher, extractor=extractor) as orchestrator:
            stats = await orchestrator.run()

        assert extractor.calls == [100, 50]
        assert stats.processed_pages == 1

    @pytest.mark.asyncio
    async def test_extraction_failure_skips_content_but_discovers_links(self, settings, extractor):
        fetcher = FakeFetcher({ROOT: make_page(ROOT, [ROOT + "next"], body="tiny")})
        sink = MemorySink()

        async with _orchestrator(settings, fetcher, extractor=extractor, sink=sink) as orchestrator:
            stats = await orchestrator.run()

        root_failures = [r for r in sink.failed if r["url"] == ROOT]
        assert root_failures[0]["status"] == "extraction_failed"
        assert extractor.calls[0] == 50
        assert ROOT + "next" in fetcher.calls
        assert stats.successful_requests == 2
        assert stats.processed_pages == 1
        assert any(w["message"].startswith("Extraction skipped") for w in stats.warnings)
        assert orchestrator.page_states[ROOT] is PageState.DONE

    @pytest.mark.asyncio
    async def test_processing_failure(self, settings):
        processor = MagicMock()
        processor.process.return_value = ProcessingResult(success=False, error="no chunks")
        fetcher = FakeFetcher()
        sink = MemorySink()

        async with _orchestrator(settings, fetcher, processor=processor, sink=sink) as orchestrator:
            stats = await orchestrator.run()

        assert sink.records[0]["status"] == "processing_failed"
        assert sink.records[0]["error"] == "no chunks"
        assert stats.processed_pages == 0
        assert stats.successful_requests == 1

    @pytest.mark.asyncio
    async def test_storage_failure_recorded_and_not_retried(self, settings):
        sink = MagicMock()
        sink.store.side_effect = ConnectionError("database unreachable")

        async with _orchestrator(settings, FakeFetcher(), sink=sink) as orchestrator:
            stats = await orchestrator.run()

        # one attempt for the chunk records; storage errors are never retried
        assert sink.store.call_count == 1
        assert stats.processed_pages == 0
        assert stats.successful_requests == 1
        assert "database unreachable" in stats.errors[0]["message"]

    @pytest.mark.asyncio
    async def test_async_sink(self, settings):
        sink = MagicMock()
        sink.store = AsyncMock()

        async with _orchestrator(settings, FakeFetcher(), sink=sink) as orchestrator:
            stats = await orchestrator.run()

        sink.store.assert_awaited()
        assert stats.processed_pages == 1


class TestHandleFailedRequest:
    @pytest.mark.asyncio
    async def test_without_proxy_pool(self, settings):
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(settings, fetcher)

        await orchestrator.handle_failed_request(
            CrawlTarget(ROOT), CrawlerError("slow down", ErrorCategory.RATE_LIMIT)
        )

        assert orchestrator.stats.failed_requests == 1
        assert fetcher.proxies == []

    @pytest.mark.asyncio
    async def test_unstructured_error_is_classified(self, settings):
        settings = settings.with_overrides(proxy_urls=["http://a", "http://b"])
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(settings, fetcher)

        await orchestrator.handle_failed_request(CrawlTarget(ROOT), RuntimeError("Too Many Requests"))

        assert orchestrator.stats.errors[0]["message"] == "Too Many Requests"
        assert fetcher.proxies == ["http://b"]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_invalid_settings(self, settings):
        orchestrator = _orchestrator(settings.with_overrides(max_concurrency=0), FakeFetcher())
        with pytest.raises(ConfigError):
            await orchestrator.initialize()

    @pytest.mark.asyncio
    async def test_browser_start_failure(self, settings):
        class BrokenFetcher(FakeFetcher):
            async def __aenter__(self):
                raise RuntimeError("chromium missing")

        with pytest.raises(CrawlInitializationError, match="chromium missing"):
            await _orchestrator(settings, BrokenFetcher()).initialize()

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, settings):
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(settings, fetcher)
        await orchestrator.initialize()
        await orchestrator.cleanup()
        await orchestrator.cleanup()
        assert fetcher.exited

    @pytest.mark.asyncio
    async def test_fresh_stats(self, settings):
        orchestrator = _orchestrator(settings, FakeFetcher(), stats=CrawlingStats())
        summary = orchestrator.get_stats()

        assert summary["success_rate"] == 0
        assert summary["total_requests"] == 0
        assert summary["error_handling"]["total_errors"] == 0

    @pytest.mark.asyncio
    async def test_invalid_chunk_settings_raise_config_error(self, settings):
        orchestrator = _orchestrator(
            settings.with_overrides(chunk_size=200, chunk_overlap=300), FakeFetcher()
        )
        with pytest.raises(ConfigError, match="chunk_overlap must be less than chunk_size"):
            await orchestrator.initialize()
        assert orchestrator.processor is None

    @pytest.mark.asyncio
    async def test_default_processor_follows_settings(self, settings):
        orchestrator = _orchestrator(
            settings.with_overrides(chunk_size=400, chunk_overlap=40), FakeFetcher()
        )
        async with orchestrator:
            assert (orchestrator.processor.chunk_size, orchestrator.processor.chunk_overlap) == (400, 40)

    @pytest.mark.asyncio
    async def test_second_run_is_refused(self, settings):
        fetcher = FakeFetcher()
        orchestrator = _orchestrator(settings.with_overrides(max_concurrency=1), fetcher)

        async with orchestrator:
            await orchestrator.run()
            with pytest.raises(RuntimeError, match="already completed a run"):
                await asyncio.wait_for(orchestrator.run([ROOT + "a", ROOT + "b"]), 3)

        assert fetcher.calls == [ROOT]


class TestWorkerResilience:
    @pytest.mark.asyncio
    async def test_unexpected_visit_error_does_not_stall_the_crawl(self, settings):
        class StatsFailingOnce(CrawlingStats):
            failed_once = False

            def increment(self, counter, amount=1):
                if counter == "total_requests" and not self.failed_once:
                    self.failed_once = True
                    raise RuntimeError("stats backend unavailable")
                super().increment(counter, amount)

        fetcher = FakeFetcher()
        orchestrator = _orchestrator(
            settings.with_overrides(max_concurrency=1),
            fetcher,
            stats=StatsFailingOnce(),
        )
        urls = [ROOT + "a", ROOT + "b", ROOT + "c"]

        async with orchestrator:
            stats = await asyncio.wait_for(orchestrator.run(urls), 5)

        assert fetcher.calls == [ROOT + "b", ROOT + "c"]
        assert orchestrator.page_states[ROOT + "a"] is PageState.FAILED
        assert stats.successful_requests == 2
        assert stats.is_complete
