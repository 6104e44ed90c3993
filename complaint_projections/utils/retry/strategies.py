from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RetryStrategy:
    """Capped exponential backoff with optional multiplicative jitter.

    ``delay_for(1)`` is the wait before the first retry and equals
    ``initial_delay``; each further retry multiplies it by
    ``exponential_base`` up to ``max_delay``. Jitter scales the capped delay
    by a factor drawn from ``[1 - jitter_spread, 1 + jitter_spread]``.
    """

    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_spread: float = 0.5

    def __post_init__(self) -> None:
        if self.initial_delay < 0 or self.max_delay < 0:
            msg = "Retry delays must not be negative"
            raise ValueError(msg)
        if not 0 <= self.jitter_spread < 1:
            msg = "jitter_spread must be in [0, 1)"
            raise ValueError(msg)

    def delay_for(self, retry_number: int) -> float:
        exponent = max(retry_number - 1, 0)
        try:
            delay = min(self.initial_delay * self.exponential_base**exponent, self.max_delay)
        except OverflowError:
            # Long outages push the exponent past float range
            delay = self.max_delay
        if self.jitter and delay:
            delay *= random.uniform(1 - self.jitter_spread, 1 + self.jitter_spread)
        return delay
