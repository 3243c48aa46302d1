"""
Bounded retry policy for provider calls.

One policy object is applied to both the search and completion adapters.
Only errors flagged as retryable are retried; everything else propagates
on the first failure.
"""

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from ai_orchestrator.logger import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


def _is_retryable(error: Exception) -> bool:
    return bool(getattr(error, "retryable", False))


@dataclass(frozen=True)
class RetryPolicy:
    """Retry with exponential backoff and additive jitter.

    ``max_attempts`` counts the first call, so 1 means no retry.
    """
    max_attempts: int = 1
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    jitter: float = 0.25
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)
    rand: Callable[[float, float], float] = field(default=random.uniform, compare=False, repr=False)

    def __post_init__(self):
        """Validate policy bounds."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_base < 0 or self.backoff_max < 0 or self.jitter < 0:
            raise ValueError("backoff and jitter values cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (0-based)."""
        delay = min(self.backoff_base * (2 ** attempt), self.backoff_max)
        if self.jitter:
            delay += self.rand(0.0, self.jitter)
        return delay

    def call(self, operation: Callable[[], T], description: Optional[str] = None) -> T:
        """Run ``operation`` until it succeeds or the attempts are spent.

        Raises:
            The last error raised by ``operation``
        """
        for attempt in range(self.max_attempts):
            try:
                return operation()
            except Exception as e:
                last_attempt = attempt + 1 >= self.max_attempts
                if last_attempt or not _is_retryable(e):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "retry.scheduled",
                    extra={
                        "event": "retry.scheduled",
                        "operation": description,
                        "attempt": attempt + 1,
                        "max_attempts": self.max_attempts,
                        "delay_s": round(delay, 3),
                        "error_type": type(e).__name__,
                    },
                )
                self.sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover


NO_RETRY = RetryPolicy()
