"""
Bounded retry policies.

Retry loops in the engine are parameterized by a ``RetryPolicy`` rather than
inline attempt counters, so the bound and the pacing live in configuration.
"""
import asyncio
from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class RetryPolicy:
    """
    A bounded retry schedule.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1)
        delay: Seconds to wait before the second attempt
        backoff: Multiplier applied to the delay after every attempt
    """

    max_attempts: int
    delay: float = 0.0
    backoff: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def attempts(self) -> Iterator[int]:
        """Yield 1-based attempt numbers."""
        return iter(range(1, self.max_attempts + 1))

    def is_last(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Seconds to sleep after the given failed attempt."""
        return self.delay * (self.backoff ** (attempt - 1))

    async def sleep(self, attempt: int) -> None:
        delay = self.delay_for(attempt)
        if delay > 0:
            await asyncio.sleep(delay)
