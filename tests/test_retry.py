import threading
import unittest

from healthchain.errors import Forbidden, UnavailableError
from healthchain.retry import RetryPolicy, call_with_retry
from tests.helpers import FakeClock, FakeSleep


class Flaky:
    """Fails with UnavailableError a fixed number of times, then succeeds"""

    def __init__(self, failures, result="ok"):
        self.failures = failures
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise UnavailableError("IPFS API unreachable: ConnectionError")
        return self.result


class TestRetry(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(0)
        self.sleep = FakeSleep(self.clock)
        self.policy = RetryPolicy(attempts=3, backoff=0.5)

    def call(self, func, **kwargs):
        return call_with_retry(func, self.policy, sleep=self.sleep, clock=self.clock, **kwargs)

    def test_succeeds_after_transient_failures(self):
        func = Flaky(2)
        self.assertEqual(self.call(func), "ok")
        self.assertEqual(func.calls, 3)
        self.assertEqual(self.sleep.calls, [0.5, 1.0])

    def test_gives_up_after_attempts(self):
        func = Flaky(10)
        with self.assertRaises(UnavailableError) as ctx:
            self.call(func)
        self.assertEqual(func.calls, 3)
        self.assertIn("try again later", ctx.exception.message)
        self.assertTrue(ctx.exception.retryable)

    def test_terminal_errors_are_not_retried(self):
        calls = []

        def forbidden():
            calls.append(1)
            raise Forbidden("No active access grant for this patient")

        with self.assertRaises(Forbidden):
            self.call(forbidden)
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.sleep.calls, [])

    def test_deadline(self):
        func = Flaky(10)
        with self.assertRaises(UnavailableError):
            self.call(func, timeout=1.0)
        # first delay (0.5s) fits, second (1.0s) would pass the deadline
        self.assertEqual(func.calls, 2)
        self.assertEqual(self.sleep.calls, [0.5])

    def test_cancelled_before_start(self):
        cancel = threading.Event()
        cancel.set()
        func = Flaky(0)
        with self.assertRaises(UnavailableError):
            self.call(func, cancel=cancel)
        self.assertEqual(func.calls, 0)

    def test_cancel_during_backoff(self):
        cancel = threading.Event()

        def fail_and_cancel():
            cancel.set()
            raise UnavailableError("unreachable")

        with self.assertRaises(UnavailableError) as ctx:
            self.call(fail_and_cancel, cancel=cancel)
        self.assertIn("cancelled", ctx.exception.message)

    def test_delay_is_capped(self):
        policy = RetryPolicy(attempts=10, backoff=1.0, factor=2.0, max_delay=4.0)
        self.assertEqual([policy.delay(n) for n in range(1, 6)], [1.0, 2.0, 4.0, 4.0, 4.0])

    def test_invalid_policy(self):
        with self.assertRaises(ValueError):
            RetryPolicy(attempts=0)


if __name__ == "__main__":
    unittest.main()
