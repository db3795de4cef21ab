"""
Bounded retry policy.

Used by the post-checkout poller to wait for a webhook to land, and by
anything else that needs "try N times with a delay, but never past a deadline".
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration.

    Attributes:
        max_attempts: total number of calls, including the first one
        delay_seconds: sleep before the second attempt
        backoff: multiplier applied to the delay after each attempt (1.0 = fixed)
        max_delay_seconds: upper bound for a single sleep
        deadline_seconds: overall time limit; no sleep is started that would overrun it
    """
    max_attempts: int = 3
    delay_seconds: float = 2.0
    backoff: float = 1.0
    max_delay_seconds: float = 30.0
    deadline_seconds: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        if self.backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given 1-based attempt."""
        delay = self.delay_seconds * (self.backoff ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        is_done: Callable[[T], bool],
        operation_name: str = "operation",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """
        Call `operation` until `is_done(result)` or the policy is exhausted.

        Exceptions raised by `operation` propagate immediately. Returns the
        last result either way; callers check it again.
        """
        started = time.monotonic()
        result = await operation()

        for attempt in range(1, self.max_attempts):
            if is_done(result):
                return result

            delay = self.delay_for(attempt)
            if self.deadline_seconds is not None:
                elapsed = time.monotonic() - started
                if elapsed + delay > self.deadline_seconds:
                    logger.info(f"{operation_name}: deadline reached after {attempt} attempt(s)")
                    return result

            logger.info(
                f"{operation_name}: attempt {attempt}/{self.max_attempts} not done, "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)
            result = await operation()

        return result
