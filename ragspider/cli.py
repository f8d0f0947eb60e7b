"""Command-line interface for the ragspider crawler."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigError
from .orchestrator import CrawlOrchestrator
from .settings import CrawlSettings, load_env_file, settings_from_env
from .sink import JsonLinesSink, MemorySink

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ragspider",
        description="Crawl documentation sites into chunked records for RAG ingestion.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Examples:
  # Crawl a docs site two levels deep into a JSON Lines file
  ragspider https://docs.example.com/ --max-depth 2 -o docs.jsonl

  # Only follow guide pages, skip the changelog
  ragspider https://docs.example.com/ \\
      --include "https://docs.example.com/guide/**" \\
      --exclude "**/changelog/**"

  # Rotate through proxies when rate limited, write run statistics
  ragspider https://docs.example.com/ --proxy http://p1:8080 --proxy http://p2:8080 \\
      --stats-json stats.json

Settings not given on the command line are read from RAGSPIDER_* environment
variables (a .env file in the working directory or ~/.config/ragspider/.env
is loaded first).
""",
    )

    parser.add_argument(
        "urls",
        nargs="*",
        help="Start URL(s); defaults to RAGSPIDER_START_URLS",
    )
    parser.add_argument(
        "--max-depth",
        type=int,
        default=None,
        help="Maximum link depth from the start URLs (default: 3)",
    )
    parser.add_argument(
        "--include",
        action="append",
        default=None,
        metavar="GLOB",
        help="URL glob to follow; repeatable (default: **)",
    )
    parser.add_argument(
        "--exclude",
        action="append",
        default=None,
        metavar="GLOB",
        help="URL glob to skip; repeatable (default: binary documents)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Concurrent page visits (default: 5)",
    )
    parser.add_argument(
        "--max-requests",
        type=int,
        default=None,
        help="Maximum pages to visit (default: 1000)",
    )
    parser.add_argument(
        "--proxy",
        action="append",
        default=None,
        metavar="URL",
        help="Proxy URL; repeatable, rotated on rate limiting",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help="Maximum characters per chunk (default: 1000)",
    )
    parser.add_argument(
        "--chunk-overlap",
        type=int,
        default=None,
        help="Characters shared between neighbouring chunks (default: 100)",
    )
    parser.add_argument(
        "--request-delay",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Pause before every page visit after the first (default: 0)",
    )
    parser.add_argument(
        "--no-dynamic-wait",
        action="store_true",
        help="Do not wait for client-side rendering before capturing HTML",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="JSON Lines file to append records to (default: print a summary only)",
    )
    parser.add_argument(
        "--stats-json",
        type=str,
        default=None,
        help="Write run statistics as JSON to this path",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args(argv)


def _build_settings(args: argparse.Namespace) -> CrawlSettings:
    settings = settings_from_env()
    overrides: Dict[str, Any] = {
        "start_urls": list(args.urls) or None,
        "max_crawl_depth": args.max_depth,
        "include_url_globs": args.include,
        "exclude_url_globs": args.exclude,
        "max_concurrency": args.concurrency,
        "max_requests_per_crawl": args.max_requests,
        "proxy_urls": args.proxy,
        "chunk_size": args.chunk_size,
        "chunk_overlap": args.chunk_overlap,
        "request_delay": args.request_delay,
    }
    if args.no_dynamic_wait:
        overrides["wait_for_dynamic_content"] = False
    return settings.with_overrides(**overrides)


def _write_stats(path: str, stats: Dict[str, Any]) -> None:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(stats, indent=2, ensure_ascii=False))
    logging.info("Wrote statistics to %s", out_path)


async def _run_async(args: argparse.Namespace) -> int:
    """Main async entry point."""
    settings = _build_settings(args)
    sink = JsonLinesSink(args.output) if args.output else MemorySink()

    async with CrawlOrchestrator(settings, sink=sink) as orchestrator:
        stats = await orchestrator.run()
        summary = orchestrator.get_stats()

    logging.info(
        "Crawl complete: %d requests (%d successful, %d failed), "
        "%d pages processed, %d chunks, %.1f%% success",
        stats.total_requests,
        stats.successful_requests,
        stats.failed_requests,
        stats.processed_pages,
        stats.extracted_chunks,
        stats.get_success_rate(),
    )
    if stats.filtered_urls or stats.depth_exceeded_urls:
        logging.info(
            "Skipped links: %d filtered, %d beyond max depth",
            stats.filtered_urls,
            stats.depth_exceeded_urls,
        )
    for error in stats.errors:
        logging.warning("Failed: %s - %s", error["url"], error["message"])

    if args.output:
        logging.info("Wrote %d records to %s", sink.count, args.output)
    if args.stats_json:
        _write_stats(args.stats_json, summary)

    return EXIT_OK if stats.processed_pages else EXIT_FAILURE


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the ragspider command."""
    args = _parse_args(argv)
    _setup_logging(args.verbose)
    load_env_file()

    try:
        return asyncio.run(_run_async(args))
    except KeyboardInterrupt:
        logging.info("Interrupted")
        return EXIT_INTERRUPTED
    except ConfigError as exc:
        logging.error("%s", exc)
        return EXIT_CONFIG
    except Exception as exc:
        logging.error("Error: %s", exc)
        if args.verbose:
            logging.exception("Full traceback:")
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
