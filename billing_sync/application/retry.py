from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable, TypeVar

from billing_sync.domain.exceptions import ProcessorUnreachableError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_seconds: float = 0.25
    multiplier: float = 2.0
    max_delay_seconds: float = 2.0

    def delays(self) -> list[float]:
        """Sleep between consecutive attempts; one entry fewer than attempts."""
        delays: list[float] = []
        delay = self.initial_delay_seconds
        for _ in range(max(1, self.max_attempts) - 1):
            delays.append(min(delay, self.max_delay_seconds))
            delay *= self.multiplier
        return delays

    def max_elapsed_seconds(self, *, call_timeout_seconds: float) -> float:
        return max(1, self.max_attempts) * call_timeout_seconds + sum(self.delays())


def call_with_retry(fn: Callable[[], T], *, policy: RetryPolicy, operation: str, context: str = "") -> T:
    """Run `fn`, retrying only transient processor failures.

    `ProcessorRejectedError` and every other exception propagate on the first
    occurrence.
    """
    attempts = max(1, policy.max_attempts)
    delays = policy.delays()

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ProcessorUnreachableError as exc:
            if attempt == attempts:
                logger.warning(
                    "processor_retry: exhausted operation=%s attempts=%s %s error=%s",
                    operation,
                    attempts,
                    context,
                    exc,
                )
                raise
            delay = delays[attempt - 1]
            logger.warning(
                "processor_retry: retry operation=%s attempt=%s/%s delay=%.2f %s error=%s",
                operation,
                attempt,
                attempts,
                delay,
                context,
                exc,
            )
            time.sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
