"""Exponential backoff with jitter for provider calls.

Only errors flagged retryable (NetworkTransient, RateLimited) are retried.
A RateLimited error's retry_after wins over the computed backoff, capped at
max_delay so a hostile header cannot park a session for an hour.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tern.config import Settings
from tern.errors import ProviderError, RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 0.1
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_multiplier,
            jitter=settings.retry_jitter,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based), jitter applied."""
        base = min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            base += base * random.uniform(-self.jitter, self.jitter)
        return max(0.0, base)

    def delay_for(self, error: ProviderError, attempt: int) -> float:
        if isinstance(error, RateLimited) and error.retry_after is not None:
            return min(error.retry_after, self.max_delay)
        return self.backoff(attempt)


async def with_retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `call`, retrying retryable ProviderErrors per `policy`.

    Non-retryable errors propagate immediately. On exhaustion the last
    error propagates unchanged so the caller still sees its category.
    """
    attempt = 1
    while True:
        try:
            return await call()
        except ProviderError as e:
            if not e.retryable or attempt >= policy.max_attempts:
                if e.retryable:
                    logger.error(
                        "Provider call failed after %d attempts: %s", attempt, e
                    )
                raise
            delay = policy.delay_for(e, attempt)
            logger.warning(
                "Provider error (%s), retrying in %.2fs (attempt %d/%d): %s",
                e.category,
                delay,
                attempt + 1,
                policy.max_attempts,
                e,
            )
            await sleep(delay)
            attempt += 1
