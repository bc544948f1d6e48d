"""Bounded exponential backoff for whole ledger transactions.

The policy wraps an entire transaction attempt, never a single
statement. Only ConflictError is retried; anything else propagates on
the attempt that raised it.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from lendledger.config import Settings
from lendledger.errors import ConflictError
from lendledger.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class AttemptCounter:
    """Attempts used so far by one operation."""

    count: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for transient contention.

    With the defaults the sleeps are 50ms then 100ms, and the third
    attempt is the last.
    """

    max_attempts: int = 3
    initial_delay: float = 0.05
    backoff_factor: float = 2.0
    sleep: Callable[[float], Awaitable[Any]] = field(
        default=asyncio.sleep, compare=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must not be negative")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            backoff_factor=settings.retry_backoff_factor,
        )

    def delay_after(self, attempt: int) -> float:
        """Seconds to sleep after failed attempt number ``attempt`` (1-based)."""
        return self.initial_delay * self.backoff_factor ** (attempt - 1)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        counter: AttemptCounter | None = None,
    ) -> T:
        """Await ``operation`` until it succeeds or the budget is spent.

        Raises:
            ConflictError: every attempt lost a race; ``attempts`` is set
                and the last failure is chained as ``__cause__``.
        """
        counter = counter or AttemptCounter()
        while True:
            counter.count += 1
            try:
                return await operation()
            except ConflictError as exc:
                if counter.count >= self.max_attempts:
                    raise ConflictError(
                        f"Gave up after {counter.count} attempts: {exc}",
                        attempts=counter.count,
                        kind=exc.kind,
                    ) from exc
                delay = self.delay_after(counter.count)
                logger.info(
                    "ledger_retry",
                    attempt=counter.count,
                    delay_ms=int(delay * 1000),
                    error=str(exc),
                )
                await self.sleep(delay)
