"""Retry policies for store writes and source fetches.

Retries back off exponentially with full jitter: the delay after the n-th
failed attempt is drawn uniformly from `[0, min(cap, base * 2**(n-1))]`.
Jitter is drawn from an injected random source, so a seeded run retries on
the same schedule.
"""

import asyncio
from collections.abc import Awaitable, Callable
import logging
import random
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
)
from tenacity.wait import wait_base

__all__ = [
    "ExceptionTypes",
    "FullJitter",
    "log_retry",
    "retrying",
]

ExceptionTypes = type[BaseException] | tuple[type[BaseException], ...]


class FullJitter(wait_base):
    """Wait strategy with exponential growth and full jitter.

    When `immediate_first` is set the first retry happens without delay, which
    is how a conflict gets one immediate re-read-and-retry before backing off.
    """

    def __init__(
        self,
        base: float,
        cap: float,
        rng: random.Random | None = None,
        immediate_first: bool = False,
    ) -> None:
        self.base = base
        self.cap = cap
        self.rng = rng or random.Random()
        self.immediate_first = immediate_first

    def ceiling(self, failures: int) -> float:
        """Upper bound of the delay after `failures` failed attempts."""
        exponent = failures - 1
        if self.immediate_first:
            if exponent == 0:
                return 0.0
            exponent -= 1
        return min(self.cap, self.base * (2**exponent))

    def __call__(self, retry_state: RetryCallState) -> float:
        ceiling = self.ceiling(retry_state.attempt_number)
        if ceiling <= 0:
            return 0.0
        return self.rng.uniform(0, ceiling)


def log_retry(
    logger: logging.Logger, level: int, label: str
) -> Callable[[RetryCallState], None]:
    """Return a before_sleep hook logging the failure about to be retried."""

    def log(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.log(
            level,
            "%s failed (attempt %d), retrying in %.2fs: %s",
            label,
            retry_state.attempt_number,
            delay,
            error,
        )

    return log


def retrying(
    wait: wait_base,
    retry_on: ExceptionTypes,
    max_retries: int | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncRetrying:
    """Return a retry policy for `async for attempt in ...` loops.

    Only `retry_on` errors are retried, anything else is raised at once. Once
    `max_retries` retries failed the last error is raised. A `max_retries` of
    None retries until cancelled.
    """
    stop = stop_never if max_retries is None else stop_after_attempt(max_retries + 1)
    return AsyncRetrying(
        stop=stop,
        wait=wait,
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )
