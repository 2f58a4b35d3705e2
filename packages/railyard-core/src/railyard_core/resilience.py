"""Retry and backoff for reconciliation.

Two distinct delays exist in the controller:

- RetryPolicy: a short, bounded retry at a single call site, for reads that
  may not yet observe a write made moments earlier (e.g. fetching an analysis
  run right after creating it). The retry predicate is explicit.
- Backoff: the per-Stage-key delay applied by the work queue after a failed
  reconciliation; it grows with consecutive failures and resets on success.

Key Components:
    RetryPolicy: Bounded retry with exponential delay and jitter
    Backoff: Per-key exponential backoff with cap and jitter

Example:
    >>> from railyard_core.config import RetryConfig
    >>> from railyard_core.errors import NotFoundError
    >>> policy = RetryPolicy(RetryConfig(max_attempts=5), retryable_exceptions=(NotFoundError,))
    >>> run = policy.call(client.get_analysis_run, "demo", "run-1")
"""

from __future__ import annotations

import functools
import random
import threading
import time
from collections.abc import Callable, Hashable
from typing import ParamSpec, TypeVar

import structlog

from railyard_core.config import BackoffConfig, RetryConfig
from railyard_core.errors import ConflictError, NotFoundError

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class RetryPolicy:
    """Bounded retry with exponential backoff and jitter.

    Only exceptions matching ``retryable_exceptions`` are retried; all others
    propagate immediately. After the last attempt the final exception is
    re-raised.

    Attributes:
        config: RetryConfig with max_attempts, delays, and jitter settings.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[Exception], ...] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types to retry on.
                Defaults to (NotFoundError, ConflictError).
            sleep: Sleep function, replaceable in tests.
        """
        self._config = config or RetryConfig()
        self._retryable_exceptions = retryable_exceptions or (NotFoundError, ConflictError)
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Uses exponential backoff: delay = initial * (multiplier ^ attempt),
        capped at max_delay_ms, with optional +/-10% jitter.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        base_delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )

        if self._config.jitter:
            jitter_range = base_delay_ms * 0.1
            base_delay_ms += random.uniform(-jitter_range, jitter_range)  # noqa: S311

        return max(base_delay_ms, 0.0) / 1000.0

    def should_retry(self, exception: Exception) -> bool:
        """Return True if the exception is in the retryable list."""
        return isinstance(exception, self._retryable_exceptions)

    def call(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """Call a function with retry logic.

        Args:
            func: Function to call.
            *args: Positional arguments for func.
            **kwargs: Keyword arguments for func.

        Returns:
            The function's return value.

        Raises:
            Exception: The last exception if all attempts fail, or the first
                non-retryable exception.
        """
        return self.wrap(func)(*args, **kwargs)

    def wrap(self, func: Callable[P, T]) -> Callable[P, T]:
        """Decorator to wrap a function with retry logic.

        Args:
            func: Function to wrap.

        Returns:
            Wrapped function that retries on retryable failures.
        """

        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempts = self._config.max_attempts
            for attempt in range(attempts):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not self.should_retry(e):
                        raise
                    if attempt + 1 >= attempts:
                        logger.warning("retry_exhausted", attempts=attempts, error=str(e))
                        raise
                    delay = self.calculate_delay(attempt)
                    logger.debug(
                        "retry_attempt",
                        attempt=attempt + 1,
                        max_attempts=attempts,
                        delay_seconds=delay,
                        error=str(e),
                    )
                    self._sleep(delay)
            raise RuntimeError("Retry exhausted without exception")

        return wrapper


class Backoff:
    """Per-key exponential backoff for failed reconciliations.

    Thread-safe. The n-th consecutive failure of a key (0-indexed) is delayed
    by ``min(base * factor**min(n, steps), cap)`` plus up to ``jitter`` of
    random extra time.

    Example:
        >>> backoff = Backoff(BackoffConfig(jitter=0))
        >>> backoff.next_delay("demo/test")
        1.0
        >>> backoff.next_delay("demo/test")
        2.0
        >>> backoff.reset("demo/test")
        >>> backoff.next_delay("demo/test")
        1.0
    """

    def __init__(self, config: BackoffConfig | None = None) -> None:
        """Initialize Backoff.

        Args:
            config: Backoff configuration. Uses defaults if None.
        """
        self._config = config or BackoffConfig()
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def next_delay(self, key: Hashable) -> float:
        """Record a failure of the key and return the delay before its retry."""
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        exponent = min(failures, self._config.steps)
        delay = min(
            self._config.base_delay_seconds * (self._config.factor**exponent),
            self._config.cap_seconds,
        )
        if self._config.jitter:
            delay += random.uniform(0, delay * self._config.jitter)  # noqa: S311
        return delay

    def failures(self, key: Hashable) -> int:
        """Return the number of consecutive failures recorded for the key."""
        with self._lock:
            return self._failures.get(key, 0)

    def reset(self, key: Hashable) -> None:
        """Forget the failures of the key after a successful reconciliation."""
        with self._lock:
            self._failures.pop(key, None)


__all__ = ["Backoff", "RetryPolicy"]
