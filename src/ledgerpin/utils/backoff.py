"""Bounded exponential backoff for transient failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from ledgerpin.core.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry schedule: ``base * factor**n`` capped per step and in total."""

    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 4.0
    max_attempts: int = 4
    max_wait: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Return the delay before retry number `attempt` (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * (self.factor ** (attempt - 1)))


def load_backoff_policy() -> BackoffPolicy:
    """Build the ledger retry policy from global settings."""
    return BackoffPolicy(
        base_delay=settings.ledger_retry_base_delay_seconds,
        factor=settings.ledger_retry_factor,
        max_delay=settings.ledger_retry_max_delay_seconds,
        max_attempts=max(1, settings.ledger_retry_max_attempts),
        max_wait=settings.ledger_retry_max_wait_seconds,
    )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    retry_on: tuple[type[BaseException], ...],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation`, retrying the listed exceptions with backoff.

    The last exception is re-raised once attempts run out or the next delay
    would push the total wait past ``policy.max_wait``.
    """
    waited = 0.0
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as exc:
            delay = policy.delay_for(attempt)
            if attempt >= policy.max_attempts or waited + delay > policy.max_wait:
                logger.warning("Giving up after %d attempt(s): %s", attempt, exc)
                raise
            logger.info("Attempt %d failed (%s); retrying in %.2fs", attempt, exc, delay)
            waited += delay
            await sleep(delay)
