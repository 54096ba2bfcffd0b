"""
Bounded retry state machines.

``PollPolicy`` drives readiness polling (fixed interval, bounded total wait)
and ``BackoffPolicy`` drives reconnects (exponential, capped, jittered,
bounded attempt count). Both are plain data; callers own the loop and inject
``sleep`` so tests can run them under a fake clock.
"""

from __future__ import annotations

import math
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class PollPolicy:
    """Poll at a fixed interval until a maximum total wait.

    Attributes:
        interval: Seconds between polls
        timeout: Maximum total seconds to wait
    """

    interval: float = 0.5
    timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError("Poll interval must be positive")
        if self.timeout < 0:
            raise ValueError("Poll timeout must not be negative")

    @property
    def max_attempts(self) -> int:
        """Number of polls, counting the immediate first one."""
        return math.floor(self.timeout / self.interval) + 1

    def attempts(self) -> Iterator[int]:
        return iter(range(self.max_attempts))


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with cap and proportional jitter.

    Attributes:
        base: Delay for the first retry in seconds
        cap: Maximum delay in seconds
        factor: Multiplier applied per attempt
        jitter: Fraction of the delay randomised (0 disables jitter)
        max_attempts: Consecutive attempts before giving up (None = unbounded)
    """

    base: float = 1.0
    cap: float = 30.0
    factor: float = 2.0
    jitter: float = 0.5
    max_attempts: int | None = 10

    def __post_init__(self) -> None:
        if self.base < 0 or self.cap < 0:
            raise ValueError("Backoff delays must not be negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError("Backoff jitter must be between 0 and 1")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("Backoff max_attempts must be at least 1")

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay before retry number ``attempt`` (0-based), jitter applied."""
        raw = min(self.base * (self.factor**attempt), self.cap)
        if not self.jitter:
            return raw
        spread = raw * self.jitter
        return max(0.0, raw - spread + 2 * spread * rng())

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts is not None and attempts >= self.max_attempts
