from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from lakehouse_orchestrator.services.config.retry_patterns import DEFAULT_RETRY_PATTERNS, RetryPatternTable
from lakehouse_orchestrator.services.errors import ResourceDependencyError


logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class ErrorClassification(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class RetryPolicy:
    """How a fallible cloud call is retried.

    `max_attempts` counts the first try. With the default multiplier of 1.0
    every retry waits exactly `delay_seconds`.
    """

    patterns: RetryPatternTable = DEFAULT_RETRY_PATTERNS
    max_attempts: int = 60
    delay_seconds: float = 60.0
    backoff_multiplier: float = 1.0
    max_delay_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")

    def delay_before(self, attempt: int) -> float:
        """Delay before `attempt` (2 = first retry)."""

        delay = self.delay_seconds * (self.backoff_multiplier ** max(attempt - 2, 0))
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay


class RetryableErrorClassifier:
    def __init__(self, patterns: RetryPatternTable = DEFAULT_RETRY_PATTERNS) -> None:
        self._patterns = patterns

    @property
    def patterns(self) -> RetryPatternTable:
        return self._patterns

    def reason(self, error: BaseException) -> Optional[str]:
        if isinstance(error, ResourceDependencyError):
            return None
        entry = self._patterns.match(str(error))
        return entry.reason if entry is not None else None

    def classify(self, error: BaseException) -> ErrorClassification:
        if self.reason(error) is not None:
            return ErrorClassification.TRANSIENT
        return ErrorClassification.FATAL


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    description: str,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run `operation`, retrying transient failures per `policy`.

    Fatal errors propagate immediately. When attempts run out the last
    underlying error is re-raised unchanged.
    """

    classifier = RetryableErrorClassifier(policy.patterns)
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            reason = classifier.reason(exc)
            if reason is None:
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    "%s: giving up after %d attempts (%s): %s", description, attempt, reason, exc
                )
                raise

            attempt += 1
            delay = policy.delay_before(attempt)
            logger.warning(
                "%s: transient error (%s, patterns v%s); retrying in %.1fs (attempt %d/%d): %s",
                description,
                reason,
                policy.patterns.version,
                delay,
                attempt,
                policy.max_attempts,
                exc,
            )
            await sleep(delay)
