from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff shared by every retried native invocation.

    The delay doubles after each failed attempt, starting at ``base_delay``.
    No delay follows the final attempt.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    sleep: Callable[[float], None] = time.sleep

    def attempts(self) -> Iterator[int]:
        """Yield attempt numbers (1-based), sleeping between them.

        Callers ``break`` out of the loop on success.
        """

        delay = self.base_delay
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                logger.info("Retrying in %ss (attempt %d/%d)", delay, attempt, self.max_attempts)
                self.sleep(delay)
                delay *= 2
            yield attempt


SINGLE_ATTEMPT = RetryPolicy(max_attempts=1)
