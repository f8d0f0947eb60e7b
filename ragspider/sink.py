"""Result sinks: where chunk records end up."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Protocol, Sequence, Union

from .document import Chunk

LOGGER = logging.getLogger(__name__)

Record = Dict[str, Any]


class ResultSink(Protocol):
    """Anything with a ``store(records)`` method; may be sync or async."""

    def store(self, records: Sequence[Record]) -> Any: ...


def chunk_to_record(
    chunk: Chunk, *, url: str, title: str, extracted_at: str
) -> Record:
    """JSON-serializable record for one chunk of a processed page."""
    metadata = dict(chunk.metadata)
    return {
        "url": url,
        "title": title,
        "status": "success",
        "content": chunk.content,
        "chunk_index": metadata.get("chunk_index", 0),
        "total_chunks": metadata.get("total_chunks", 1),
        "token_count": metadata.get("token_count", 0),
        "metadata": metadata,
        "extracted_at": extracted_at,
    }


def failure_record(url: str, title: str, step: str, error: str, timestamp: str) -> Record:
    return {
        "url": url,
        "title": title,
        "status": f"{step}_failed",
        "error": error,
        "timestamp": timestamp,
    }


class MemorySink:
    """Keep records in a list; handy for tests and library use."""

    def __init__(self) -> None:
        self.records: List[Record] = []

    def store(self, records: Sequence[Record]) -> None:
        self.records.extend(records)

    @property
    def successful(self) -> List[Record]:
        return [record for record in self.records if record.get("status") == "success"]

    @property
    def failed(self) -> List[Record]:
        return [record for record in self.records if record.get("status") != "success"]


class JsonLinesSink:
    """Append records to a file, one JSON object per line."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self.count = 0

    def store(self, records: Sequence[Record]) -> None:
        if not records:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            for record in records:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self.count += len(records)
        LOGGER.debug("Wrote %d record(s) to %s", len(records), self.path)
