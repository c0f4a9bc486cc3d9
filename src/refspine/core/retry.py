"""
Retry strategies for external fetches.

Sync retries each page independently. Only errors flagged retryable
(``TransientError`` and subclasses) are retried; everything else fails the
page on the first attempt.

Examples:
    >>> strategy = ExponentialBackoff(base_delay=2.0, max_retries=4, jitter=False)
    >>> [strategy.next_delay(n) for n in range(4)]
    [2.0, 4.0, 8.0, 16.0]

    >>> slept = []
    >>> ctx = RetryContext(strategy, sleep=slept.append)
    >>> ctx.run(fetch_page, 3)  # doctest: +SKIP

Tags:
    retry, backoff, resilience, refspine
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from refspine.core.errors import get_retry_after, is_retryable
from refspine.core.timestamps import utc_now

T = TypeVar("T")


class RetryStrategy(ABC):
    """Base class for retry strategies.

    ``retries`` is the number of retries already made (0 before the first retry).
    """

    @abstractmethod
    def next_delay(self, retries: int) -> float:
        """Seconds to wait before retry number ``retries + 1``."""
        ...

    @abstractmethod
    def should_retry(self, retries: int, error: Exception | None = None) -> bool:
        """Whether another retry is allowed after ``retries`` retries."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = base_delay * (multiplier ** retries), capped at max_delay.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        multiplier: Exponential base
        jitter: Add random jitter to prevent thundering herd
        jitter_range: Jitter as a fraction of delay
        honor_retry_after: Use the error's ``retry_after`` hint when it is longer
    """

    max_retries: int = 4
    base_delay: float = 2.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25
    honor_retry_after: bool = False

    def next_delay(self, retries: int) -> float:
        """Calculate exponential backoff delay."""
        delay = min(
            self.base_delay * (self.multiplier ** retries),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return delay

    def should_retry(self, retries: int, error: Exception | None = None) -> bool:
        if retries >= self.max_retries:
            return False
        if error is not None:
            return is_retryable(error)
        return True


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, retries: int) -> float:
        return 0.0

    def should_retry(self, retries: int, error: Exception | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Runs a callable under a strategy and records every failed attempt.

    ``sleep`` is injectable so callers (and tests) control waiting.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_retries=3))
        >>> result = ctx.run(lambda: call_api())
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], Any] = time.sleep
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utc_now, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)
    delays: list[float] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute function with retry logic.

        Raises:
            The last exception once retries are exhausted or it is not retryable
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utc_now()))

                retries = self.attempt - 1
                if not self.strategy.should_retry(retries, e):
                    raise

                delay = self.strategy.next_delay(retries)
                hint = get_retry_after(e)
                if (
                    hint is not None
                    and isinstance(self.strategy, ExponentialBackoff)
                    and self.strategy.honor_retry_after
                ):
                    delay = max(delay, float(hint))

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                self.delays.append(delay)
                self.sleep(delay)


__all__ = [
    "RetryStrategy",
    "ExponentialBackoff",
    "NoRetry",
    "RetryContext",
]
