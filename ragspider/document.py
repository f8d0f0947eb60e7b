"""Data structures passed between the crawl stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True, slots=True)
class CrawlTarget:
    """A URL waiting in the frontier, with the hop count that led to it."""

    url: str
    depth: int = 0
    origin: str = ""


@dataclass(slots=True)
class DiscoveredLink:
    """Outgoing link collected from a fetched page."""

    href: str
    label: str = ""
    internal: bool = True


@dataclass(slots=True)
class FetchedPage:
    """Raw browser output for one page visit."""

    url: str
    final_url: str
    html: str
    title: str = ""
    status_code: Optional[int] = None
    links: List[DiscoveredLink] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExtractionResult:
    """Clean text pulled out of a page body."""

    success: bool
    text: str = ""
    title: str = ""
    error: Optional[str] = None
    fallback_used: bool = False


@dataclass(slots=True)
class Chunk:
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessingResult:
    """Chunks produced from one page's text."""

    success: bool
    chunks: List[Chunk] = field(default_factory=list)
    total_tokens: int = 0
    original_length: int = 0
    error: Optional[str] = None
