"""Crawl settings: defaults, environment loading and validation."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv

from .errors import ConfigError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "ragspider"
CONFIG_ENV_FILE = CONFIG_DIR / ".env"
ENV_PREFIX = "RAGSPIDER_"

# Binary documents that never yield useful text
DEFAULT_EXCLUDE_GLOBS: List[str] = [
    "**/*.pdf",
    "**/*.jpg",
    "**/*.jpeg",
    "**/*.png",
    "**/*.gif",
    "**/*.svg",
    "**/*.zip",
    "**/*.tar.gz",
    "**/*.exe",
    "**/*.dmg",
]


@dataclass
class ErrorHandlingSettings:
    """Retry knobs for wrapped page steps.

    Only ``max_retries`` and ``base_delay`` affect behavior; retry delays are
    linear (``base_delay * attempt``). ``max_delay``, ``backoff_multiplier``
    and ``jitter`` are validated and carried along but not applied.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True


@dataclass
class CrawlSettings:
    """Everything a crawl run needs, already parsed into Python types.

    Durations are in seconds.
    """

    start_urls: List[str] = field(default_factory=list)
    max_crawl_depth: int = 3
    include_url_globs: List[str] = field(default_factory=lambda: ["**"])
    exclude_url_globs: List[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_GLOBS)
    )
    max_concurrency: int = 5
    max_requests_per_crawl: int = 1000
    max_request_retries: int = 3
    navigation_timeout: float = 30.0
    request_handler_timeout: float = 60.0
    request_delay: float = 0.0
    wait_for_dynamic_content: bool = True
    dynamic_content_wait: float = 2.0
    readiness_timeout: float = 5.0
    min_content_length: int = 100
    fallback_min_content_length: int = 50
    chunk_size: int = 1000
    chunk_overlap: int = 100
    headless: bool = True
    proxy_urls: List[str] = field(default_factory=list)
    error_handling: ErrorHandlingSettings = field(default_factory=ErrorHandlingSettings)

    def with_overrides(self, **overrides) -> "CrawlSettings":
        """Copy with every non-None override applied."""
        applied = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **applied)


def load_env_file(
    *,
    cwd: Optional[Path] = None,
    config_env_file: Path = CONFIG_ENV_FILE,
    load_env: Callable[[Path], bool] = load_dotenv,
) -> Optional[Path]:
    """Load ``.env`` from the working directory, else the user config dir."""
    local_env = (cwd or Path.cwd()) / ".env"
    if local_env.is_file():
        load_env(local_env)
        return local_env

    if config_env_file.is_file():
        load_env(config_env_file)
        return config_env_file

    return None


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


_ENV_FIELDS: Dict[str, tuple] = {
    "START_URLS": ("start_urls", _split_list),
    "MAX_CRAWL_DEPTH": ("max_crawl_depth", int),
    "INCLUDE_URL_GLOBS": ("include_url_globs", _split_list),
    "EXCLUDE_URL_GLOBS": ("exclude_url_globs", _split_list),
    "MAX_CONCURRENCY": ("max_concurrency", int),
    "MAX_REQUESTS_PER_CRAWL": ("max_requests_per_crawl", int),
    "MAX_REQUEST_RETRIES": ("max_request_retries", int),
    "NAVIGATION_TIMEOUT": ("navigation_timeout", float),
    "REQUEST_HANDLER_TIMEOUT": ("request_handler_timeout", float),
    "REQUEST_DELAY": ("request_delay", float),
    "WAIT_FOR_DYNAMIC_CONTENT": ("wait_for_dynamic_content", _parse_bool),
    "DYNAMIC_CONTENT_WAIT": ("dynamic_content_wait", float),
    "CHUNK_SIZE": ("chunk_size", int),
    "CHUNK_OVERLAP": ("chunk_overlap", int),
    "HEADLESS": ("headless", _parse_bool),
    "PROXY_URLS": ("proxy_urls", _split_list),
}

_ENV_RETRY_FIELDS: Dict[str, tuple] = {
    "MAX_RETRIES": ("max_retries", int),
    "BASE_DELAY": ("base_delay", float),
}


def settings_from_env(
    environ: Optional[Mapping[str, str]] = None,
    base: Optional[CrawlSettings] = None,
) -> CrawlSettings:
    """Build settings from ``RAGSPIDER_*`` environment variables.

    Variables that are unset keep the value from ``base`` (or the defaults).
    """
    env = os.environ if environ is None else environ
    settings = base or CrawlSettings()
    problems: List[str] = []

    def _read(table: Dict[str, tuple]) -> Dict[str, object]:
        values: Dict[str, object] = {}
        for suffix, (attr, parse) in table.items():
            raw = env.get(ENV_PREFIX + suffix)
            if raw is None or raw == "":
                continue
            try:
                values[attr] = parse(raw)
            except ValueError:
                problems.append(f"{ENV_PREFIX}{suffix} has invalid value {raw!r}")
        return values

    top_level = _read(_ENV_FIELDS)
    retry_values = _read(_ENV_RETRY_FIELDS)
    if problems:
        raise ConfigError(problems)

    if retry_values:
        top_level["error_handling"] = replace(settings.error_handling, **retry_values)
    return replace(settings, **top_level)


def validate_settings(settings: CrawlSettings) -> CrawlSettings:
    """Check settings for consistency; raise ``ConfigError`` listing all problems."""
    problems: List[str] = []

    if not settings.start_urls:
        problems.append("start_urls must be a non-empty list")
    for url in settings.start_urls:
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            problems.append(f"start URL {url!r} is not an absolute http(s) URL")

    if not settings.include_url_globs:
        problems.append("include_url_globs must be a non-empty list")
    if settings.max_crawl_depth < 1:
        problems.append("max_crawl_depth must be at least 1")
    if settings.max_concurrency < 1:
        problems.append("max_concurrency must be at least 1")
    if settings.max_requests_per_crawl < 1:
        problems.append("max_requests_per_crawl must be at least 1")
    if settings.max_request_retries < 0:
        problems.append("max_request_retries cannot be negative")
    if settings.chunk_size < 100:
        problems.append("chunk_size must be at least 100")
    if settings.chunk_overlap < 0:
        problems.append("chunk_overlap cannot be negative")
    if settings.chunk_overlap >= settings.chunk_size:
        problems.append("chunk_overlap must be less than chunk_size")
    if settings.min_content_length < 0 or settings.fallback_min_content_length < 0:
        problems.append("content length thresholds cannot be negative")

    for name in (
        "navigation_timeout",
        "request_handler_timeout",
        "readiness_timeout",
    ):
        if getattr(settings, name) <= 0:
            problems.append(f"{name} must be positive")
    for name in ("request_delay", "dynamic_content_wait"):
        if getattr(settings, name) < 0:
            problems.append(f"{name} cannot be negative")

    retry = settings.error_handling
    if retry.max_retries < 0:
        problems.append("error_handling.max_retries cannot be negative")
    if retry.base_delay < 0:
        problems.append("error_handling.base_delay cannot be negative")
    if retry.max_delay < retry.base_delay:
        problems.append("error_handling.max_delay must be >= base_delay")
    if retry.backoff_multiplier < 1:
        problems.append("error_handling.backoff_multiplier must be >= 1")

    if problems:
        raise ConfigError(problems)
    LOGGER.debug("Settings validated: %d start URL(s)", len(settings.start_urls))
    return settings
