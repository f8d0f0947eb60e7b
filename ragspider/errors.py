"""Error vocabulary and classification for crawl failures.

Every failure raised while visiting a page is mapped onto two independent
axes:

- a *category* (``ErrorCategory``) that decides whether the failure is
  worth retrying, and
- a *severity* (``ErrorSeverity``) that only drives log level and recovery
  escalation.

Classification is structured first: errors raised by our own layers carry
an explicit category (``CrawlerError``) or a ``FailureKind``. The
message-substring heuristic in ``categorize_message`` is only consulted for
unstructured exceptions coming out of the browser engine.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


class ErrorCategory(str, Enum):
    """What kind of thing went wrong."""

    NETWORK = "network"
    PARSING = "parsing"
    EXTRACTION = "extraction"
    PROCESSING = "processing"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    MEMORY = "memory"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """How loudly a failure should be reported."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FailureKind(str, Enum):
    """Normalized failure kinds reported by the browser layer."""

    CONNECTION_RESET = "connection_reset"
    CONNECTION_REFUSED = "connection_refused"
    DNS_FAILURE = "dns_failure"
    NAVIGATION_TIMEOUT = "navigation_timeout"
    HANDLER_TIMEOUT = "handler_timeout"
    HTTP_TOO_MANY_REQUESTS = "http_too_many_requests"
    HTTP_SERVER_ERROR = "http_server_error"
    HTTP_CLIENT_ERROR = "http_client_error"
    EMPTY_CONTENT = "empty_content"
    OUT_OF_MEMORY = "out_of_memory"
    BROWSER_CRASH = "browser_crash"


RETRYABLE_CATEGORIES = frozenset(
    {ErrorCategory.NETWORK, ErrorCategory.TIMEOUT, ErrorCategory.RATE_LIMIT}
)

FAILURE_KIND_CATEGORIES: Mapping[FailureKind, ErrorCategory] = MappingProxyType(
    {
        FailureKind.CONNECTION_RESET: ErrorCategory.NETWORK,
        FailureKind.CONNECTION_REFUSED: ErrorCategory.NETWORK,
        FailureKind.DNS_FAILURE: ErrorCategory.NETWORK,
        FailureKind.HTTP_SERVER_ERROR: ErrorCategory.NETWORK,
        FailureKind.NAVIGATION_TIMEOUT: ErrorCategory.TIMEOUT,
        FailureKind.HANDLER_TIMEOUT: ErrorCategory.TIMEOUT,
        FailureKind.HTTP_TOO_MANY_REQUESTS: ErrorCategory.RATE_LIMIT,
        FailureKind.HTTP_CLIENT_ERROR: ErrorCategory.VALIDATION,
        FailureKind.EMPTY_CONTENT: ErrorCategory.EXTRACTION,
        FailureKind.OUT_OF_MEMORY: ErrorCategory.MEMORY,
        FailureKind.BROWSER_CRASH: ErrorCategory.UNKNOWN,
    }
)

# Checked in order; the first category with a matching needle wins.
_MESSAGE_NEEDLES: Tuple[Tuple[ErrorCategory, Tuple[str, ...]], ...] = (
    (
        ErrorCategory.NETWORK,
        (
            "network",
            "econnreset",
            "enotfound",
            "econnrefused",
            "err_name_not_resolved",
            "err_connection",
            "err_internet_disconnected",
        ),
    ),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out", "etimedout")),
    (ErrorCategory.RATE_LIMIT, ("rate limit", "too many requests", "http 429")),
    (ErrorCategory.MEMORY, ("out of memory", "heap out of memory")),
)


class RagSpiderError(Exception):
    """Base class for errors raised by this package."""


class ConfigError(RagSpiderError):
    """Raised when crawl settings fail validation."""

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__(
            "Configuration validation failed: " + ", ".join(self.problems)
        )


class CrawlInitializationError(RagSpiderError):
    """Raised when the crawl cannot start. The only run-fatal failure."""


class CrawlerError(RagSpiderError):
    """A failure with an explicit category, severity and context.

    Instances are never mutated after creation; ``retryable`` is derived
    from the category.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = ErrorCategory(category)
        self.severity = ErrorSeverity(severity) if severity else severity_for(self.category)
        self.context: Mapping[str, Any] = MappingProxyType(dict(context or {}))
        self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES

    @classmethod
    def from_exception(
        cls, exc: BaseException, context: Optional[Dict[str, Any]] = None
    ) -> "CrawlerError":
        """Wrap an arbitrary exception, classifying it on the way."""
        if isinstance(exc, CrawlerError):
            return exc
        category, severity = classify_error(exc)
        return cls(_message_of(exc), category, severity, context)

    def __repr__(self) -> str:
        return (
            f"CrawlerError({self.message!r}, category={self.category.value}, "
            f"severity={self.severity.value})"
        )


class PageFetchError(CrawlerError):
    """Browser-layer failure carrying a normalized ``FailureKind``."""

    def __init__(
        self,
        message: str,
        kind: FailureKind,
        *,
        url: str = "",
        status_code: Optional[int] = None,
    ) -> None:
        self.kind = FailureKind(kind)
        self.url = url
        self.status_code = status_code
        super().__init__(
            message,
            FAILURE_KIND_CATEGORIES[self.kind],
            context={"url": url, "status_code": status_code, "kind": self.kind.value},
        )


def severity_for(category: ErrorCategory) -> ErrorSeverity:
    """Severity is keyed on category and never gates retries."""
    if category is ErrorCategory.MEMORY:
        return ErrorSeverity.HIGH
    if category in (ErrorCategory.NETWORK, ErrorCategory.TIMEOUT):
        return ErrorSeverity.MEDIUM
    if category is ErrorCategory.RATE_LIMIT:
        return ErrorSeverity.LOW
    return ErrorSeverity.MEDIUM


def categorize_message(message: str) -> ErrorCategory:
    """Last-resort substring heuristic for unstructured failures."""
    lowered = (message or "").lower()
    for category, needles in _MESSAGE_NEEDLES:
        if any(needle in lowered for needle in needles):
            return category
    return ErrorCategory.UNKNOWN


def classify_error(exc: BaseException) -> Tuple[ErrorCategory, ErrorSeverity]:
    """Map a raw failure to ``(category, severity)``."""
    if isinstance(exc, CrawlerError):
        return exc.category, exc.severity

    kind = getattr(exc, "kind", None)
    if isinstance(kind, FailureKind):
        category = FAILURE_KIND_CATEGORIES[kind]
    elif isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        category = ErrorCategory.TIMEOUT
    elif isinstance(exc, MemoryError):
        category = ErrorCategory.MEMORY
    elif isinstance(exc, ConnectionError):
        category = ErrorCategory.NETWORK
    else:
        category = categorize_message(_message_of(exc))
    return category, severity_for(category)


def _message_of(exc: BaseException) -> str:
    message = str(exc)
    if message:
        return message
    return type(exc).__name__
