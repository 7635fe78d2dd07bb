"""Exponential backoff with jitter for broker reconnection."""

from __future__ import annotations

import random
from dataclasses import dataclass

BACKOFF_MULTIPLIER = 2.0


@dataclass
class BackoffState:
    """Tracks consecutive failures and the delay to wait before the next try.

    Attributes:
        initial_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        jitter: Fraction of the delay randomly added or removed
        consecutive_failures: Failures since the last success
    """

    initial_delay: float = 5.0
    max_delay: float = 60.0
    jitter: float = 0.1
    consecutive_failures: int = 0

    def next_delay(self) -> float:
        """Delay for the upcoming attempt, growing with each recorded failure."""
        delay = min(
            self.initial_delay * (BACKOFF_MULTIPLIER**self.consecutive_failures),
            self.max_delay,
        )
        if self.jitter:
            delay += delay * self.jitter * random.uniform(-1.0, 1.0)
        return max(0.0, delay)

    def record_failure(self) -> None:
        self.consecutive_failures += 1

    def reset(self) -> None:
        self.consecutive_failures = 0

    def exhausted(self, max_attempts: int) -> bool:
        return self.consecutive_failures >= max_attempts
