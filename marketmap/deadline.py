"""Time budgets for upstream calls derived from one absolute deadline.

All values are seconds on the monotonic clock. A ``deadline`` of ``None``
means the caller did not set a budget, in which case every check passes and
each call gets the full per-request ceiling.
"""

import random
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class DeadlinePolicy:
    request_timeout_s: float = 25.0
    min_request_timeout_s: float = 2.0
    safety_margin_s: float = 1.5

    def time_left(self, deadline: Optional[float], now: float) -> float:
        if deadline is None:
            return float("inf")
        return max(0.0, deadline - now)

    def expired(self, deadline: Optional[float], now: float) -> bool:
        """True once the remaining budget is inside the safety margin."""
        if deadline is None:
            return False
        return deadline - now <= self.safety_margin_s

    def request_timeout(self, deadline: Optional[float], now: float) -> float:
        """Timeout for the next call, or 0.0 when there is no time left at all."""
        if deadline is None:
            return self.request_timeout_s
        left = self.time_left(deadline, now)
        if left <= self.safety_margin_s:
            return 0.0
        return min(self.request_timeout_s, max(self.min_request_timeout_s, left - self.safety_margin_s))

    def has_time_for_retry(self, deadline: Optional[float], delay_s: float, now: float) -> bool:
        if deadline is None:
            return True
        return self.time_left(deadline, now) > delay_s + self.min_request_timeout_s + self.safety_margin_s

    def has_time_for_request(self, deadline: Optional[float], now: float) -> bool:
        if deadline is None:
            return True
        return self.time_left(deadline, now) > self.min_request_timeout_s + self.safety_margin_s


def backoff_delay(
    attempt: int,
    base_s: float,
    max_s: float,
    jitter_s: float = 0.3,
    rng: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff for the n-th (1-based) overload retry, capped, plus jitter."""
    delay = min(max_s, base_s * (2 ** max(0, attempt - 1)))
    return delay + rng() * jitter_s
