"""Bounded retries with exponential backoff and full jitter."""

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, cap: float, jitter: bool = True) -> float:
    """Delay before retry number ``attempt`` (0-based): random(0, min(cap, base * 2^attempt))."""
    delay = min(cap, base * (2**attempt))
    if jitter:
        delay = random.uniform(0, delay)
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    jitter: bool = True

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        retry_on: tuple[type[BaseException], ...],
        sleep: Callable[[float], Any] = time.sleep,
        **kwargs: Any,
    ) -> T:
        """Call fn, retrying on retry_on up to ``attempts`` total tries.

        The last error is re-raised once attempts are exhausted. Anything not
        in retry_on propagates immediately.
        """
        attempts = max(1, self.attempts)
        for attempt in range(attempts - 1):
            try:
                return fn(*args, **kwargs)
            except retry_on as e:
                delay = backoff_delay(attempt, self.base_delay, self.max_delay, self.jitter)
                logger.debug(
                    "retrying",
                    call=getattr(fn, "__name__", repr(fn)),
                    attempt=attempt + 1,
                    delay_seconds=round(delay, 3),
                    error=str(e),
                )
                sleep(delay)
        return fn(*args, **kwargs)
