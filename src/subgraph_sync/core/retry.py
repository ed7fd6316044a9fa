"""
Retry helper shared by the retriever, the batch writer and the stores.

One loop, parameterized by a policy and a predicate deciding which errors
are retryable. The outcome is returned as a RetryResult instead of raising,
so callers decide whether an exhausted retry is fatal.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

from subgraph_sync.errors import RateLimitedError, is_transient
from subgraph_sync.utils.logger import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter.

    ``max_retries=None`` retries forever.
    """

    max_retries: int | None = 3
    base_delay: float = 0.75
    max_delay: float = 30.0
    jitter: float = 0.25

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        backoff = min(self.max_delay, self.base_delay * (2**attempt))
        if self.jitter <= 0:
            return backoff
        return backoff + (rng or random).uniform(0, self.jitter)

    def allows(self, retries_done: int) -> bool:
        return self.max_retries is None or retries_done < self.max_retries


@dataclass
class RetryResult(Generic[T]):
    """Outcome of retry_async: a value or the last error."""

    value: T | None = None
    error: BaseException | None = None
    retries: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the last error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retryable: Callable[[BaseException], bool] = is_transient,
    rate_limit_policy: RetryPolicy | None = None,
    sleep: SleepFunc = asyncio.sleep,
    label: str = "operation",
) -> RetryResult[T]:
    """
    Run ``operation`` until it succeeds or retries are exhausted.

    Errors for which ``retryable`` is False end the loop immediately.
    Rate-limited errors use ``rate_limit_policy`` when given and wait at
    least the server provided ``retry_after``.
    """
    retries = 0
    rate_limited_retries = 0
    while True:
        try:
            value = await operation()
            return RetryResult(value=value, retries=retries + rate_limited_retries)
        except Exception as exc:
            if not retryable(exc):
                return RetryResult(error=exc, retries=retries + rate_limited_retries)

            if isinstance(exc, RateLimitedError) and rate_limit_policy is not None:
                active, count = rate_limit_policy, rate_limited_retries
            else:
                active, count = policy, retries

            if not active.allows(count):
                log_event(
                    logger,
                    logging.WARNING,
                    "retries exhausted",
                    label=label,
                    retries=retries + rate_limited_retries,
                    error=exc,
                )
                return RetryResult(error=exc, retries=retries + rate_limited_retries)

            delay = active.delay(count)
            retry_after = getattr(exc, "retry_after", None)
            if retry_after:
                delay = max(delay, float(retry_after))

            if active is policy:
                retries += 1
            else:
                rate_limited_retries += 1

            log_event(
                logger,
                logging.WARNING,
                "retrying",
                label=label,
                attempt=retries + rate_limited_retries,
                delay=f"{delay:.2f}s",
                error=exc,
            )
            await sleep(delay)
