"""
Backoff policy — delay schedule between command retries.

Delays grow geometrically (``delay *= multiplier`` after every failed
attempt), starting from ``base_delay`` and optionally capped at
``max_delay``.  No jitter: the schedule is the same on every host.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from stackprov.core.models.settings import RetrySettings


@dataclass
class BackoffPolicy:
    """Exponential backoff between attempts."""

    base_delay: float = 10.0
    multiplier: float = 2.0
    max_delay: float | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def schedule(self, attempts: int) -> list[float]:
        """Delays between ``attempts`` tries (one fewer than attempts)."""
        return [self.delay_for(i) for i in range(1, attempts)]

    def wait(self, attempt: int) -> float:
        delay = self.delay_for(attempt)
        if delay > 0:
            self.sleep(delay)
        return delay

    @classmethod
    def from_settings(
        cls,
        retry: RetrySettings,
        sleep: Callable[[float], None] | None = None,
    ) -> BackoffPolicy:
        policy = cls(
            base_delay=retry.base_delay,
            multiplier=retry.multiplier,
            max_delay=retry.max_delay,
        )
        if sleep is not None:
            policy.sleep = sleep
        return policy
