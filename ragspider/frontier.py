"""Link admission: glob pattern and depth filtering for discovered URLs."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import urlsplit

from wcmatch import glob

LOGGER = logging.getLogger(__name__)

MATCH_ALL = "**"
GLOB_FLAGS = glob.GLOBSTAR | glob.BRACE | glob.DOTGLOB | glob.FORCEUNIX
_SLASH_RUN_RE = re.compile(r"/{2,}")


class FilterReason(str, Enum):
    DEPTH_EXCEEDED = "depth_exceeded"
    EXCLUDED_PATTERN = "excluded_pattern"
    NOT_INCLUDED = "not_included"
    ALLOWED = "allowed"


@dataclass(frozen=True, slots=True)
class FilterDecision:
    """Outcome of a single admission check."""

    allowed: bool
    reason: FilterReason


_DEPTH_EXCEEDED = FilterDecision(False, FilterReason.DEPTH_EXCEEDED)
_EXCLUDED = FilterDecision(False, FilterReason.EXCLUDED_PATTERN)
_NOT_INCLUDED = FilterDecision(False, FilterReason.NOT_INCLUDED)
_ALLOWED = FilterDecision(True, FilterReason.ALLOWED)


def normalize_url(url: str) -> Optional[str]:
    """Strip the fragment and nothing else.

    Returns None for URLs that cannot be parsed as absolute http(s)-style
    URLs (missing scheme or host).
    """
    if not isinstance(url, str) or not url.strip():
        return None
    candidate = url.strip()
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return candidate.split("#", 1)[0]


def origin_of(url: str) -> str:
    """Return ``scheme://host[:port]`` for a URL, or an empty string."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return ""
    if not parts.scheme or not parts.netloc:
        return ""
    return f"{parts.scheme}://{parts.netloc}"


def matches_any(url: str, patterns: Iterable[str]) -> bool:
    """True when ``url`` matches at least one minimatch-style glob.

    ``**`` spans path separators, ``*`` and ``?`` stay within one segment,
    ``{a,b}`` alternation and ``[...]`` classes are supported. Patterns that
    fail to compile are logged and skipped.
    """
    # "scheme://host" is one separator as far as segment matching goes
    path = _SLASH_RUN_RE.sub("/", url)
    for pattern in patterns:
        try:
            if glob.globmatch(path, _SLASH_RUN_RE.sub("/", pattern), flags=GLOB_FLAGS):
                return True
        except (re.error, ValueError):
            LOGGER.warning("Ignoring invalid URL glob %r", pattern)
    return False


class UrlFilter:
    """Decide whether a discovered URL should be visited.

    The filter is read-only after construction and safe to share between
    concurrent page visits.
    """

    def __init__(
        self,
        include_globs: Optional[Iterable[str]] = None,
        exclude_globs: Optional[Iterable[str]] = None,
        max_depth: int = 3,
    ) -> None:
        self.include_globs = (
            tuple(include_globs) if include_globs is not None else (MATCH_ALL,)
        )
        self.exclude_globs = tuple(exclude_globs or ())
        self.max_depth = max_depth

    def should_crawl(self, url: str, depth: int) -> FilterDecision:
        # depth beats every pattern, exclusion beats inclusion
        if depth >= self.max_depth:
            return _DEPTH_EXCEEDED

        normalized = normalize_url(url)
        if normalized is None:
            return _NOT_INCLUDED

        if matches_any(normalized, self.exclude_globs):
            return _EXCLUDED

        if not matches_any(normalized, self.include_globs):
            return _NOT_INCLUDED

        return _ALLOWED

    def __repr__(self) -> str:
        return (
            f"UrlFilter(include={list(self.include_globs)}, "
            f"exclude={list(self.exclude_globs)}, max_depth={self.max_depth})"
        )
