"""
Bounded retry with exponential backoff.

Content-store reads and ledger submissions fail transiently; callers wrap them
in call_with_retry() with their own deadline and an optional cancellation
event. Only UnavailableError is retried, everything else propagates unchanged.
"""

import logging
import time

from healthchain.constants import RETRY_ATTEMPTS, RETRY_BACKOFF
from healthchain.errors import UnavailableError

logger = logging.getLogger(__name__)


class RetryPolicy:
    """How many times to try and how long to wait in between"""

    def __init__(self, attempts=RETRY_ATTEMPTS, backoff=RETRY_BACKOFF, factor=2.0, max_delay=8.0):
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.attempts = attempts
        self.backoff = backoff
        self.factor = factor
        self.max_delay = max_delay

    def delay(self, attempt):
        """Delay after the given (1-based) failed attempt"""
        return min(self.backoff * (self.factor ** (attempt - 1)), self.max_delay)


def call_with_retry(func, policy=None, timeout=None, cancel=None, sleep=time.sleep, clock=time.monotonic):
    """
    Call func() until it succeeds, retrying UnavailableError with backoff.

    Args:
        func: Zero-argument callable
        policy: RetryPolicy, defaults to the configured attempts/backoff
        timeout: Overall deadline in seconds for all attempts
        cancel: threading.Event; once set, no further attempt is made
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        Whatever func() returns

    Raises:
        UnavailableError: attempts exhausted, deadline passed or cancelled
    """
    policy = policy or RetryPolicy()
    deadline = clock() + timeout if timeout is not None else None
    last_error = None

    for attempt in range(1, policy.attempts + 1):
        if cancel is not None and cancel.is_set():
            raise UnavailableError("Operation cancelled, try again")
        try:
            return func()
        except UnavailableError as e:
            last_error = e
            if attempt == policy.attempts:
                break

            delay = policy.delay(attempt)
            if deadline is not None and clock() + delay >= deadline:
                logger.warning(f"Deadline reached after {attempt} attempt(s): {e.message}")
                break

            logger.warning(f"Attempt {attempt}/{policy.attempts} failed ({e.message}), retrying in {delay:.2f}s")
            if cancel is not None:
                if cancel.wait(delay):
                    raise UnavailableError("Operation cancelled, try again")
            else:
                sleep(delay)

    raise UnavailableError(f"Service unavailable, try again later ({last_error.message})")
