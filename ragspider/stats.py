"""Run-level crawl statistics."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

_COUNTERS = frozenset(
    {
        "total_requests",
        "successful_requests",
        "failed_requests",
        "filtered_urls",
        "depth_exceeded_urls",
        "processed_pages",
        "extracted_chunks",
        "total_tokens",
    }
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CrawlingStats:
    """Aggregate counters for one crawl run.

    A single instance is shared by every concurrent page visit of a run.
    Each update is one attribute increment or one list append executed on
    the event loop thread, so no locking is needed. Once ``complete()`` has
    been called the instance is frozen.
    """

    start_time: datetime = field(default_factory=_now)
    end_time: Optional[datetime] = None
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    filtered_urls: int = 0
    depth_exceeded_urls: int = 0
    processed_pages: int = 0
    extracted_chunks: int = 0
    total_tokens: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[Dict[str, str]] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.end_time is not None

    def increment(self, counter: str, amount: int = 1) -> None:
        if counter not in _COUNTERS:
            raise AttributeError(f"Unknown statistics counter: {counter}")
        if amount < 0:
            raise ValueError("Counters are monotonic")
        self._ensure_open()
        setattr(self, counter, getattr(self, counter) + amount)

    def add_error(self, error: BaseException | str, url: str = "") -> None:
        self._ensure_open()
        message = error if isinstance(error, str) else (str(error) or type(error).__name__)
        self.errors.append(
            {"message": message, "url": url, "timestamp": _now().isoformat()}
        )

    def add_warning(self, message: str, url: str = "") -> None:
        self._ensure_open()
        self.warnings.append(
            {"message": message, "url": url, "timestamp": _now().isoformat()}
        )

    def complete(self) -> None:
        if self.end_time is None:
            self.end_time = _now()

    def get_duration(self) -> float:
        """Elapsed seconds, measured to now while the run is unfinished."""
        end = self.end_time or _now()
        return max(0.0, (end - self.start_time).total_seconds())

    def get_success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.successful_requests / self.total_requests * 100

    def summary(self) -> Dict[str, Any]:
        """JSON-friendly snapshot with derived rates."""
        duration = self.get_duration()
        data = asdict(self)
        data["start_time"] = self.start_time.isoformat()
        data["end_time"] = self.end_time.isoformat() if self.end_time else None
        data["duration"] = round(duration, 3)
        data["success_rate"] = round(self.get_success_rate(), 2)
        data["pages_per_second"] = (
            round(self.processed_pages / duration, 3) if duration > 0 else 0.0
        )
        data["chunks_per_page"] = (
            round(self.extracted_chunks / self.processed_pages, 2)
            if self.processed_pages
            else 0.0
        )
        data["error_count"] = len(self.errors)
        data["warning_count"] = len(self.warnings)
        return data

    def _ensure_open(self) -> None:
        if self.end_time is not None:
            raise RuntimeError("Crawling statistics are read-only after completion")
