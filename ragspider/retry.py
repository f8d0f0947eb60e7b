"""Retry policy and the skip-on-exhaustion error handler.

``RetryPolicy`` retries a single logical operation (identified by a
caller-supplied ``operation_id``) while its failures are retryable.
``ErrorHandler`` wraps the policy so that exhausted operations come back as
a ``SkippedOperation`` sentinel instead of an exception; this is what keeps
one page's failure from aborting the run.

Operation ids must be unique per logical step, e.g.
``"content-extraction-https://example.com/docs"``. Two unrelated steps that
share an id also share a retry budget.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .errors import (
    CrawlerError,
    ErrorCategory,
    ErrorSeverity,
    RETRYABLE_CATEGORIES,
    classify_error,
)

LOGGER = logging.getLogger(__name__)

Operation = Callable[[], Union[Awaitable[Any], Any]]
SleepFn = Callable[[float], Awaitable[Any]]

SEVERITY_LOG_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.ERROR,
}


@dataclass(frozen=True, slots=True)
class SkippedOperation:
    """Returned in place of a result when an operation exhausted its retries."""

    reason: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    operation_id: str = ""
    recovered: bool = False
    skipped: bool = True


def is_skipped(value: Any) -> bool:
    return isinstance(value, SkippedOperation)


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class RetryPolicy:
    """Linear-backoff retries keyed by operation id.

    The delay before retry ``n`` is ``base_delay * n`` seconds. The
    ``max_delay``, ``backoff_multiplier`` and ``jitter`` settings are
    accepted for configuration compatibility but are not applied.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        *,
        max_delay: Optional[float] = None,
        backoff_multiplier: Optional[float] = None,
        jitter: bool = False,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter
        self._sleep = sleep or asyncio.sleep
        self.attempts: Dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: Any, sleep: Optional[SleepFn] = None) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            backoff_multiplier=settings.backoff_multiplier,
            jitter=settings.jitter,
            sleep=sleep,
        )

    def calculate_delay(self, attempt: int) -> float:
        return self.base_delay * attempt

    def should_retry(self, error: BaseException, operation_id: str) -> bool:
        # attempts counts failures so far, the first of which is not a retry
        attempts = self.attempts.get(operation_id, 0)
        if attempts > self.max_retries:
            return False
        category, _ = classify_error(error)
        return category in RETRYABLE_CATEGORIES

    async def execute_with_retry(self, operation: Operation, operation_id: str) -> Any:
        try:
            while True:
                try:
                    result = await maybe_await(operation())
                except Exception as exc:
                    attempt = self.attempts.get(operation_id, 0) + 1
                    self.attempts[operation_id] = attempt
                    if not self.should_retry(exc, operation_id):
                        self.attempts.pop(operation_id, None)
                        raise
                    delay = self.calculate_delay(attempt)
                    LOGGER.debug(
                        "Retrying %s in %.2fs (attempt %d/%d): %s",
                        operation_id,
                        delay,
                        attempt,
                        self.max_retries,
                        exc,
                    )
                    await self._sleep(delay)
                else:
                    self.attempts.pop(operation_id, None)
                    return result
        except asyncio.CancelledError:
            # a cancelled operation (handler timeout) leaves no retry state behind
            self.attempts.pop(operation_id, None)
            raise


@dataclass
class ErrorStats:
    total_errors: int = 0
    errors_by_category: Counter = field(default_factory=Counter)
    errors_by_severity: Counter = field(default_factory=Counter)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "errors_by_category": dict(self.errors_by_category),
            "errors_by_severity": dict(self.errors_by_severity),
        }


class ErrorHandler:
    """Run fallible steps with retries; downgrade exhausted failures to skips."""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self.error_stats = ErrorStats()

    async def execute_with_error_handling(
        self,
        operation: Operation,
        operation_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            return await self.retry_policy.execute_with_retry(operation, operation_id)
        except Exception as exc:
            error = CrawlerError.from_exception(exc, context)
            self._update_error_stats(error)
            LOGGER.log(
                SEVERITY_LOG_LEVELS.get(error.severity, logging.WARNING),
                "Error in %s [%s]: %s",
                operation_id,
                error.category.value,
                error.message,
            )
            return SkippedOperation(
                reason=error.message,
                category=error.category,
                operation_id=operation_id,
            )

    def get_error_stats(self) -> Dict[str, Any]:
        return self.error_stats.as_dict()

    def reset_stats(self) -> None:
        self.error_stats = ErrorStats()

    def _update_error_stats(self, error: CrawlerError) -> None:
        self.error_stats.total_errors += 1
        self.error_stats.errors_by_category[error.category.value] += 1
        self.error_stats.errors_by_severity[error.severity.value] += 1
