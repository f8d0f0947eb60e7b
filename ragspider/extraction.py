"""Default content extractor: rendered HTML to readable markdown text."""

from __future__ import annotations

import html as html_lib
import logging
import re
from typing import Optional

from crawl4ai import PruningContentFilterLXML
from crawl4ai.markdown_generation_strategy import DefaultMarkdownGenerator

from .document import ExtractionResult

LOGGER = logging.getLogger(__name__)

DEFAULT_MIN_CONTENT_LENGTH = 100

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_H1_RE = re.compile(r"<h1[^>]*>(.*?)</h1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def build_markdown_generator() -> DefaultMarkdownGenerator:
    """Markdown generator tuned for documentation pages."""
    prune_filter = PruningContentFilterLXML(
        threshold=0.45,
        threshold_type="dynamic",
        min_word_threshold=1,
    )
    return DefaultMarkdownGenerator(
        content_filter=prune_filter,
        options={
            "citations": False,
            "body_width": 0,
            "ignore_images": True,
            "skip_internal_links": True,
        },
    )


def extract_title(html: str) -> str:
    """``<title>`` text, else the first ``<h1>``, else empty."""
    for pattern in (_TITLE_RE, _H1_RE):
        match = pattern.search(html or "")
        if match:
            text = html_lib.unescape(_TAG_RE.sub("", match.group(1)))
            text = " ".join(text.split())
            if text:
                return text
    return ""


def _clean(markdown: str) -> str:
    text = (markdown or "").replace("\r\n", "\n").strip()
    return _BLANK_LINES_RE.sub("\n\n", text)


class ContentExtractor:
    """Extract the main text of a page as markdown.

    The pruned ("fit") markdown is preferred. When pruning leaves less than
    the requested minimum, the unfiltered markdown is used instead, so a
    lower ``min_content_length`` makes a fallback pass more permissive.
    """

    def __init__(
        self,
        min_content_length: int = DEFAULT_MIN_CONTENT_LENGTH,
        generator: Optional[DefaultMarkdownGenerator] = None,
    ) -> None:
        self.min_content_length = min_content_length
        self.generator = generator or build_markdown_generator()

    def extract(
        self, html: str, url: str, *, min_content_length: Optional[int] = None
    ) -> ExtractionResult:
        threshold = (
            self.min_content_length if min_content_length is None else min_content_length
        )
        title = extract_title(html)
        if not (html or "").strip():
            return ExtractionResult(success=False, title=title, error="Empty HTML")

        generated = self.generator.generate_markdown(
            html,
            base_url=url,
            options=self.generator.options,
            content_filter=self.generator.content_filter,
            citations=False,
        )
        fit_markdown = _clean(getattr(generated, "fit_markdown", "") or "")
        raw_markdown = _clean(getattr(generated, "raw_markdown", "") or "")

        if len(fit_markdown) >= threshold:
            return ExtractionResult(success=True, text=fit_markdown, title=title)
        if len(raw_markdown) >= threshold:
            LOGGER.debug("Pruned markdown too short for %s, using raw markdown", url)
            return ExtractionResult(
                success=True, text=raw_markdown, title=title, fallback_used=True
            )

        return ExtractionResult(
            success=False,
            text=raw_markdown or fit_markdown,
            title=title,
            error=(
                f"Content too short: {len(raw_markdown or fit_markdown)} "
                f"characters (minimum {threshold})"
            ),
        )
