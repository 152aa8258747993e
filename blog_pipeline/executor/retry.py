"""Bounded exponential-backoff retry around a stage call.

Only TransientStageFailure is retried. Malformed output, validation errors and
anything else propagate on the first occurrence. Cancellation (CancelledError)
interrupts the backoff sleep and is never retried.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from blog_pipeline.executor.errors import TransientStageFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retry settings
MAX_RETRIES = 3
BASE_DELAY_SECONDS = 1.0


class RetryPolicy:
    """Retry a coroutine factory on transient failures.

    The factory receives the 1-indexed attempt number so the stage executor
    can stamp it on the invocation record.
    """

    def __init__(
        self,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_index: int) -> float:
        """Delay before retry number `retry_index` (0 for the first retry)."""
        return self.base_delay * (2 ** retry_index)

    async def run(self, fn: Callable[[int], Awaitable[T]], *, label: str = "") -> T:
        last_error: Optional[TransientStageFailure] = None

        for attempt in range(1, self.max_attempts + 1):
            if last_error is not None:
                delay = self.delay_for(attempt - 2)
                logger.warning(
                    f"[{label}] Retry {attempt - 1}/{self.max_retries} after {delay:.1f}s "
                    f"(previous error: {last_error})"
                )
                await self._sleep(delay)

            try:
                return await fn(attempt)
            except TransientStageFailure as e:
                last_error = e
                logger.error(
                    f"[{label}] Attempt {attempt}/{self.max_attempts} failed (transient): {e}"
                )

        logger.error(f"[{label}] Giving up after {self.max_attempts} attempts")
        raise last_error
