"""Shared retry policy: exponential backoff with jitter.

One policy object is injected wherever a provider call or a job attempt
may be repeated, instead of each call site sleeping on its own schedule.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and delay schedule.

    Attributes:
        max_attempts: Total attempts, including the first one.
        base_delay: Delay in seconds before the second attempt.
        max_delay: Upper bound for any single delay.
        jitter: Fraction of the delay randomly added or removed (0–1).
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        delay = min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)
        if self.jitter and delay:
            spread = delay * self.jitter
            delay = random.uniform(delay - spread, delay + spread)
        return max(delay, 0.0)

    def next_run_at(self, attempt: int, now: Optional[datetime] = None) -> datetime:
        """Wall-clock time at which a retry of `attempt` may start."""
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.delay_for(attempt))

    async def run(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        is_retryable: Callable[[BaseException], bool] = lambda exc: True,
        label: str = "operation",
    ) -> T:
        """Await func() until it succeeds or the attempt budget is spent.

        Errors rejected by is_retryable propagate immediately; the last
        error propagates once attempts run out.
        """
        attempt = 1
        while True:
            try:
                return await func()
            except Exception as exc:
                if attempt >= self.max_attempts or not is_retryable(exc):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    label, attempt, self.max_attempts, delay, exc,
                )
                await asyncio.sleep(delay)
                attempt += 1
