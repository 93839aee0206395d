#!/usr/bin/env python3
"""
Timelock policy tests: derivation, ordering and the cross-ledger margin.
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.core import Escrow
from htlcswap.errors import ConfigurationError, OrderingViolated, WindowTooShort, TimelockViolation
from htlcswap.timelock import TimelockPolicy, finality_margin


def make_escrow(exclusive: int, recovery: int) -> Escrow:
    return Escrow(
        escrow_id=b"\x01" * 32, sender="maker", recipient=None, token="SRC",
        amount=100, hashlock=b"\x02" * 32,
        timelock_exclusive=exclusive, timelock_recovery=recovery,
    )


class TestDerive(unittest.TestCase):

    def setUp(self):
        self.policy = TimelockPolicy(3600, 7200, clock_skew_seconds=30,
                                     finality_margin_seconds=40)

    def test_derive_defaults(self):
        self.assertEqual(self.policy.derive(1000), (4600, 8200))

    def test_derive_overrides(self):
        self.assertEqual(self.policy.derive(1000, 60, 120), (1060, 1120))

    def test_exclusive_must_precede_recovery(self):
        with self.assertRaises(ConfigurationError):
            self.policy.derive(1000, 7200, 3600)
        with self.assertRaises(ConfigurationError):
            self.policy.derive(1000, 3600, 3600)

    def test_durations_positive(self):
        with self.assertRaises(ConfigurationError):
            TimelockPolicy(0, 7200)
        with self.assertRaises(ConfigurationError):
            self.policy.derive(1000, -1, 10)

    def test_finality_margin(self):
        self.assertEqual(finality_margin(3, 12), 36)
        self.assertEqual(self.policy.min_window_seconds, 70)


class TestDestinationWindow(unittest.TestCase):

    def setUp(self):
        self.policy = TimelockPolicy(3600, 7200, clock_skew_seconds=30,
                                     finality_margin_seconds=40)
        self.source = make_escrow(4600, 8200)

    def test_destination_deadline(self):
        """Destination recovery + margin + skew <= source exclusive."""
        self.assertEqual(self.policy.destination_deadline(self.source), 4530)

    def test_derive_destination(self):
        exclusive, recovery = self.policy.derive_destination(self.source, 1000)
        self.assertEqual(recovery, 4530)
        self.assertEqual(exclusive, 1000 + (4530 - 1000) // 2)
        self.assertLess(exclusive, recovery)

    def test_derive_destination_too_late(self):
        with self.assertRaises(WindowTooShort):
            self.policy.derive_destination(self.source, 4500)

    def test_validate_pair_ok(self):
        destination = make_escrow(2765, 4530)
        self.policy.validate_pair(self.source, destination, now=1000)

    def test_validate_pair_destination_outlives_margin(self):
        destination = make_escrow(2765, 4560)
        with self.assertRaises(WindowTooShort):
            self.policy.validate_pair(self.source, destination)


class TestValidate(unittest.TestCase):

    def setUp(self):
        self.policy = TimelockPolicy(3600, 7200, clock_skew_seconds=30,
                                     finality_margin_seconds=40)

    def test_ordering_violated(self):
        with self.assertRaises(OrderingViolated):
            self.policy.validate(make_escrow(8200, 4600))

    def test_window_too_short(self):
        escrow = make_escrow(1050, 1090)
        with self.assertRaises(WindowTooShort):
            self.policy.validate(escrow, now=1000)

    def test_skew_tolerance_override(self):
        escrow = make_escrow(1050, 1100)
        self.policy.validate(escrow, clock_skew_tolerance=0, now=1000)
        with self.assertRaises(WindowTooShort):
            self.policy.validate(escrow, clock_skew_tolerance=31, now=1000)

    def test_violations_are_invariant_errors(self):
        self.assertTrue(issubclass(OrderingViolated, TimelockViolation))
        self.assertTrue(OrderingViolated.terminal)


if __name__ == "__main__":
    unittest.main(verbosity=2)
