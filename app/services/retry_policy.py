"""
Retry Policy — bounded attempts with fixed or exponential delay.
================================================================

Used by the token ledger's optimistic-concurrency loop. Kept separate from
the store so the schedule can be unit-tested on its own.

    delay(attempt) = min(max_delay_s, base_delay_s * backoff_factor ** (attempt - 1))

backoff_factor = 1.0 gives a fixed delay (the ledger default: 3 attempts,
50ms apart).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterator, Optional

from app.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.05
    backoff_factor: float = 1.0
    max_delay_s: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_s < 0:
            raise ValueError(f"base_delay_s must be >= 0, got {self.base_delay_s}")
        if self.backoff_factor < 1.0:
            raise ValueError(f"backoff_factor must be >= 1.0, got {self.backoff_factor}")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.ledger_max_attempts,
            base_delay_s=settings.ledger_retry_delay_ms / 1000,
            backoff_factor=settings.ledger_backoff_factor,
        )

    def attempts(self) -> Iterator[int]:
        """Yield attempt numbers 1..max_attempts."""
        return iter(range(1, self.max_attempts + 1))

    def has_next(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after a failed *attempt* (1-based) before retrying."""
        delay = self.base_delay_s * (self.backoff_factor ** max(0, attempt - 1))
        if self.max_delay_s is not None:
            delay = min(delay, self.max_delay_s)
        return delay

    async def sleep(self, attempt: int) -> None:
        await asyncio.sleep(self.delay_for(attempt))
