"""
Deadline-bounded retry for transient ledger failures.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ..core import SystemClock
from ..errors import NetworkError, DeadlineExceeded

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Backoff:
    """Exponential backoff schedule."""
    initial: float = 1.0
    maximum: float = 30.0
    multiplier: float = 2.0

    def delays(self):
        delay = self.initial
        while True:
            yield delay
            delay = min(self.maximum, delay * self.multiplier)


def call_with_retry(fn: Callable[[], T], deadline: int, clock=None,
                    backoff: Optional[Backoff] = None, label: str = "call") -> T:
    """
    Call `fn` until it returns, retrying NetworkError with backoff.

    Any other exception propagates immediately. The first attempt always
    runs; retries stop at `deadline` (unix seconds on `clock`).

    Raises:
        DeadlineExceeded: if the deadline passes while the call keeps failing
    """
    clock = clock or SystemClock()
    backoff = backoff or Backoff()
    attempt = 0

    for delay in backoff.delays():
        attempt += 1
        try:
            return fn()
        except NetworkError as e:
            remaining = deadline - clock.now()
            if remaining <= 0:
                raise DeadlineExceeded(f"{label}: deadline passed after {attempt} attempts, last error: {e}")
            wait = min(delay, remaining)
            log.warning(f"{label} failed (attempt {attempt}): {e}; retrying in {wait:.1f}s")
            clock.sleep(wait)
