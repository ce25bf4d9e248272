"""
Retry with exponential backoff.
Delay before attempt n+1 is initial_delay * multiplier ** (n - 1): 1s, 2s, 4s, ...
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from venuemap.core.constants import RETRY_MAX_ATTEMPTS, RETRY_INITIAL_DELAY_SEC, RETRY_MULTIPLIER
from venuemap.core.error_codes import JobError, RetryExhaustedError
from venuemap.core.models import RetryResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = RETRY_MAX_ATTEMPTS
    initial_delay: float = RETRY_INITIAL_DELAY_SEC
    multiplier: float = RETRY_MULTIPLIER

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_config(cls, retry: dict) -> "RetryPolicy":
        return cls(
            max_attempts=int(retry['max_attempts']),
            initial_delay=float(retry['initial_delay_sec']),
            multiplier=float(retry['multiplier']),
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after `attempt` (1-based) has failed."""
        return self.initial_delay * (self.multiplier ** (attempt - 1))

    async def run(self, operation: Callable[[], Awaitable[Any]], label: str = "operation",
                  sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> RetryResult:
        """
        Run `operation` until it succeeds or attempts run out.
        JobErrors marked non-retryable stop immediately. On giving up, raises
        RetryExhaustedError carrying the attempt count and the last error.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                value = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if isinstance(e, JobError) and not e.retryable:
                    logger.warning("%s failed with non-retryable error: %s", label, e)
                    raise RetryExhaustedError(e, attempt) from e
                if attempt >= self.max_attempts:
                    logger.warning("%s failed on final attempt %d/%d: %s",
                                   label, attempt, self.max_attempts, e)
                    raise RetryExhaustedError(e, attempt) from e

                delay = self.delay_for(attempt)
                logger.warning("%s failed (attempt %d/%d): %s — retrying in %.1fs",
                               label, attempt, self.max_attempts, e, delay)
                await sleep(delay)
                continue

            return RetryResult(value=value, attempts=attempt)

        # Should never reach here
        raise AssertionError("retry loop exited without result")
