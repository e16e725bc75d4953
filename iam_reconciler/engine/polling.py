"""
Bounded polling for asynchronous backend operations.

Stacks and change sets settle asynchronously. poll_until() fetches a status
repeatedly, sleeping between attempts, until a terminal status is seen or
the time budget runs out.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollTimeout(Exception):
    """Raised when no terminal status was reached within the budget."""

    def __init__(self, description: str, elapsed: float, last_value: Optional[object] = None):
        super().__init__(f"Timed out after {elapsed:.0f}s waiting for {description}")
        self.description = description
        self.elapsed = elapsed
        self.last_value = last_value


class PollPolicy:
    """
    Polling schedule.

    - interval: seconds to sleep after the first attempt
    - timeout: total budget in seconds
    - backoff: multiplier applied to the interval after every attempt (1.0 = fixed)
    - max_interval: upper bound on a single sleep
    """

    def __init__(self, interval: float = 2.0, timeout: float = 600.0,
                 backoff: float = 1.0, max_interval: float = 30.0):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")
        self.interval = interval
        self.timeout = timeout
        self.backoff = backoff
        self.max_interval = max(max_interval, interval)

    def get_delay(self, attempt: int) -> float:
        return min(self.interval * (self.backoff ** attempt), self.max_interval)

    def with_timeout(self, timeout: float) -> "PollPolicy":
        return PollPolicy(self.interval, timeout, self.backoff, self.max_interval)


def poll_until(fetch: Callable[[], T], is_terminal: Callable[[T], bool], policy: PollPolicy,
               description: str = "operation",
               sleep: Callable[[float], None] = time.sleep,
               clock: Callable[[], float] = time.monotonic) -> T:
    """
    Call fetch() until is_terminal(value) holds, returning that value.

    Exceptions raised by fetch() propagate unchanged. PollTimeout is raised
    once the policy's timeout has elapsed without a terminal value; the
    final sleep is shortened so the budget is never overrun.
    """
    started = clock()
    attempt = 0
    while True:
        value = fetch()
        if is_terminal(value):
            logger.debug(f"{description} reached terminal state after {attempt + 1} polls")
            return value

        elapsed = clock() - started
        remaining = policy.timeout - elapsed
        if remaining <= 0:
            raise PollTimeout(description, elapsed, value)

        delay = min(policy.get_delay(attempt), remaining)
        logger.debug(f"Waiting {delay:.1f}s for {description} (poll {attempt + 1})")
        sleep(delay)
        attempt += 1
