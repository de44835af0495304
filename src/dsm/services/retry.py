from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from dsm.domain.errors import ConflictError, TransientIOError

log = logging.getLogger(__name__)

T = TypeVar("T")

# conditional updates and reads are safe to repeat
RETRYABLE = (ConflictError, TransientIOError)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff with equal jitter for the given 1-based attempt."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return ceiling / 2 + random.uniform(0, ceiling / 2)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    op: str,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE,
) -> T:
    attempts = max(1, int(policy.max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt >= attempts:
                log.warning("retry_exhausted op=%s attempts=%s error=%s", op, attempt, e)
                raise
            delay = policy.delay_for(attempt)
            log.info("retrying op=%s attempt=%s delay=%.3f error=%s", op, attempt, delay, e)
            policy.sleep(delay)
    raise AssertionError("unreachable")
