"""Default text processor: chunking, per-chunk metadata and token estimates."""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlsplit

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .document import Chunk, ProcessingResult

LOGGER = logging.getLogger(__name__)

DEFAULT_SEPARATORS = ("\n\n", "\n", " ", "")
CHARS_PER_TOKEN = 4
MAX_TOKEN_CACHE = 1000

_HEADING_RE = re.compile(r"^#{1,6} ", re.MULTILINE)
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+\.) ", re.MULTILINE)
_INLINE_CODE_RE = re.compile(r"`[^`\n]+`")
_LINK_RE = re.compile(r"(?<!!)\[[^\]]*\]\([^)]*\)")
_TABLE_ROW_RE = re.compile(r"^\s*\|.*\|\s*$", re.MULTILINE)


def analyze_structure(content: str) -> Dict[str, int]:
    """Count the markdown constructs in a piece of text."""
    return {
        "headings": len(_HEADING_RE.findall(content)),
        "list_items": len(_LIST_ITEM_RE.findall(content)),
        "code_blocks": content.count("```") // 2,
        "inline_code": len(_INLINE_CODE_RE.findall(content)),
        "links": len(_LINK_RE.findall(content)),
        "table_rows": len(_TABLE_ROW_RE.findall(content)),
    }


def _domain_of(url: str) -> str:
    try:
        return urlsplit(url).hostname or ""
    except ValueError:
        return ""


def detect_content_type(structure: Dict[str, int]) -> str:
    if structure["code_blocks"] > 3 or structure["inline_code"] > 10:
        return "technical-documentation"
    if structure["headings"] > 3:
        return "structured-document"
    if structure["list_items"] > 5:
        return "list-heavy"
    if structure["table_rows"] > 2:
        return "data-heavy"
    return "general-text"


class TextProcessor:
    """Turn extracted page text into RAG-ready chunks."""

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 100,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
        max_cache_size: int = MAX_TOKEN_CACHE,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be non-negative and smaller than chunk_size")
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self.splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            length_function=len,
            separators=list(separators),
            keep_separator=False,
        )
        self.max_cache_size = max_cache_size
        self._token_cache: "OrderedDict[str, int]" = OrderedDict()

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def chunk_overlap(self) -> int:
        return self._chunk_overlap

    def estimate_tokens(self, text: str) -> int:
        """Rough token count, about four characters per token."""
        if not text:
            return 0
        cached = self._token_cache.get(text)
        if cached is not None:
            self._token_cache.move_to_end(text)
            return cached
        estimate = max(1, -(-len(text) // CHARS_PER_TOKEN))
        self._token_cache[text] = estimate
        if len(self._token_cache) > self.max_cache_size:
            self._token_cache.popitem(last=False)
        return estimate

    def clear_cache(self) -> None:
        self._token_cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._token_cache)

    def process(
        self, text: str, source_info: Optional[Dict[str, Any]] = None
    ) -> ProcessingResult:
        source = source_info or {}
        if not isinstance(text, str) or not text.strip():
            return ProcessingResult(
                success=False, error="Text content must be a non-empty string"
            )

        pieces = self.splitter.split_text(text)
        if not pieces:
            return ProcessingResult(
                success=False,
                original_length=len(text),
                error="Text splitter returned no chunks",
            )

        url = source.get("url", "")
        domain = _domain_of(url)
        extracted_at = datetime.now(timezone.utc).isoformat()
        chunks: List[Chunk] = []
        total_tokens = 0
        for index, content in enumerate(pieces):
            tokens = self.estimate_tokens(content)
            total_tokens += tokens
            structure = analyze_structure(content)
            chunks.append(
                Chunk(
                    content=content,
                    metadata={
                        "source_url": url,
                        "domain": domain,
                        "title": source.get("title", ""),
                        "chunk_index": index,
                        "total_chunks": len(pieces),
                        "chunk_id": f"{url}#chunk-{index}",
                        "chunk_size": len(content),
                        "word_count": len(content.split()),
                        "token_count": tokens,
                        "has_overlap": index > 0 and self.chunk_overlap > 0,
                        "content_type": detect_content_type(structure),
                        "structure": structure,
                        "extracted_at": extracted_at,
                    },
                )
            )

        LOGGER.debug("Split %d characters from %s into %d chunks", len(text), url, len(chunks))
        return ProcessingResult(
            success=True,
            chunks=chunks,
            total_tokens=total_tokens,
            original_length=len(text),
        )
