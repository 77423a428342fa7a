"""Bounded retry with exponential backoff for fallible operations."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from ai_queue.errors import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException, int], bool]
RetryCallback = Callable[[int, BaseException, float], None]


def backoff_delay(attempt: int, initial_delay: float) -> float:
    """Delay before the retry that follows zero-based `attempt`."""

    return initial_delay * (2 ** max(attempt, 0))


def default_should_retry(error: BaseException, _attempt: int) -> bool:
    return isinstance(error, TransientProviderError)


class RetryExecutor:
    """Re-invokes a zero-argument operation until it succeeds or gives up.

    Holds no per-call state, so one instance can be shared across worker
    threads. Attempts are strictly sequential and delays carry no jitter.
    """

    def __init__(self, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def execute(
        self,
        operation: Callable[[], T],
        *,
        max_attempts: int,
        initial_delay: float,
        should_retry: RetryPredicate | None = None,
        on_retry: RetryCallback | None = None,
    ) -> T:
        """Return the first successful result or re-raise the last error unchanged.

        Args:
            operation: Callable invoked once per attempt.
            max_attempts: Total attempts including the first one.
            initial_delay: Seconds before the first retry; doubles each retry.
            should_retry: Predicate `(error, zero_based_attempt)`; defaults to
                retrying `TransientProviderError` only.
            on_retry: Observer called with `(attempt, error, delay)` before sleeping.
        """

        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        predicate = should_retry or default_should_retry

        attempt = 0
        while True:
            try:
                return operation()
            except Exception as error:
                final = attempt + 1 >= max_attempts
                if final or not predicate(error, attempt):
                    raise
                delay = backoff_delay(attempt, initial_delay)
                logger.info(
                    "Attempt %d/%d failed (%s); retrying in %.2fs",
                    attempt + 1,
                    max_attempts,
                    type(error).__name__,
                    delay,
                )
                if on_retry is not None:
                    on_retry(attempt, error, delay)
                if delay > 0:
                    self._sleep(delay)
                attempt += 1
