#!/usr/bin/env python3
"""
Per-account sequencing and deadline-bounded retry.
"""

import sys
import os
import time
import threading
import unittest
from unittest.mock import MagicMock

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.errors import NetworkError, DeadlineExceeded, InvalidPreimage
from htlcswap.htlc.memory import SimulatedClock
from htlcswap.swap.retry import Backoff, call_with_retry
from htlcswap.swap.sequencer import AccountSequencer


class TestAccountSequencer(unittest.TestCase):

    def setUp(self):
        self.sequencer = AccountSequencer()

    def tearDown(self):
        self.sequencer.shutdown()

    def test_same_account_is_serialized(self):
        active = []
        overlap = []
        lock = threading.Lock()

        def write(n):
            with lock:
                active.append(n)
                if len(active) > 1:
                    overlap.append(n)
            time.sleep(0.01)
            with lock:
                active.remove(n)
            return n

        futures = [self.sequencer.submit("evm", "0xA", write, i) for i in range(10)]
        self.assertEqual([f.result(timeout=5) for f in futures], list(range(10)))
        self.assertEqual(overlap, [])

    def test_accounts_run_in_parallel(self):
        started = threading.Event()
        release = threading.Event()

        def blocking():
            started.set()
            release.wait(5)
            return "a"

        blocked = self.sequencer.submit("evm", "0xA", blocking)
        started.wait(5)
        # A different account is not queued behind 0xA
        self.assertEqual(self.sequencer.call("evm", "0xB", lambda: "b"), "b")
        release.set()
        self.assertEqual(blocked.result(timeout=5), "a")

    def test_exceptions_propagate(self):
        def fail():
            raise InvalidPreimage("bad")
        with self.assertRaises(InvalidPreimage):
            self.sequencer.call("near", "alice.testnet", fail)

    def test_shutdown_refuses_work(self):
        self.sequencer.shutdown()
        with self.assertRaises(RuntimeError):
            self.sequencer.submit("near", "alice.testnet", lambda: None)


class TestBackoff(unittest.TestCase):

    def test_delays_capped(self):
        delays = Backoff(1.0, 5.0, 2.0).delays()
        self.assertEqual([next(delays) for _ in range(5)], [1.0, 2.0, 4.0, 5.0, 5.0])


class TestCallWithRetry(unittest.TestCase):

    def setUp(self):
        self.clock = SimulatedClock(start=1000)

    def test_retries_network_errors(self):
        fn = MagicMock(side_effect=[NetworkError("down"), NetworkError("down"), "ok"])
        self.assertEqual(call_with_retry(fn, deadline=2000, clock=self.clock), "ok")
        self.assertEqual(fn.call_count, 3)
        self.assertEqual(self.clock.now(), 1003)

    def test_other_errors_not_retried(self):
        fn = MagicMock(side_effect=InvalidPreimage("bad"))
        with self.assertRaises(InvalidPreimage):
            call_with_retry(fn, deadline=2000, clock=self.clock)
        self.assertEqual(fn.call_count, 1)

    def test_deadline(self):
        fn = MagicMock(side_effect=NetworkError("down"))
        with self.assertRaises(DeadlineExceeded):
            call_with_retry(fn, deadline=1010, clock=self.clock, backoff=Backoff(4.0, 4.0, 1.0))
        self.assertGreaterEqual(self.clock.now(), 1010)
        self.assertLessEqual(fn.call_count, 5)

    def test_first_attempt_after_deadline(self):
        """A read past its deadline still gets one attempt."""
        fn = MagicMock(return_value="state")
        self.assertEqual(call_with_retry(fn, deadline=500, clock=self.clock), "state")


if __name__ == "__main__":
    unittest.main(verbosity=2)
