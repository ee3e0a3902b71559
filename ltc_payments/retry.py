"""
Bounded retry with linear backoff.
"""

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry schedule for a single call.

    The wait before attempt n+1 is `backoff_seconds * n`, so the default
    policy sleeps 0.5s after the first failure and 1.0s after the second.
    """

    max_attempts: int = 3
    backoff_seconds: float = 0.5
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be non-negative")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.backoff_seconds * attempt

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def wait(self, attempt: int) -> None:
        self.sleep(self.delay(attempt))
