#!/usr/bin/env python3
"""
Coordinator state machine tests.

Both legs run on in-process ledgers sharing a simulated clock, so the
poll loop in drive() advances time instead of sleeping.
"""

import sys
import os
import hashlib
import unittest
from unittest.mock import patch

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.commitment import HashCommitment
from htlcswap.config import CoordinatorConfig
from htlcswap.core import Escrow, SwapState
from htlcswap.errors import (
    ConfigurationError, NetworkError, NotFound, AlreadyExists, AlreadyRegistered,
    InvalidPreimage, NotYetExpired,
)
from htlcswap.htlc.memory import InMemoryEscrowLedger, SimulatedClock
from htlcswap.swap.coordinator import Coordinator, derive_state
from htlcswap.swap.secret_channel import InMemorySecretChannel
from htlcswap.timelock import TimelockPolicy

SECRET = b"mysecret"
HASHLOCK = hashlib.sha256(SECRET).digest()


class CoordinatorTestCase(unittest.TestCase):

    source_confirmations = 1
    dest_confirmations = 1

    def setUp(self):
        self.clock = SimulatedClock()
        self.t0 = self.clock.now()
        self.commitment = HashCommitment("sha256")
        self.source = InMemoryEscrowLedger(self.commitment, clock=self.clock, chain="near",
                                           confirmations=self.source_confirmations)
        self.destination = InMemoryEscrowLedger(self.commitment, clock=self.clock, chain="evm",
                                                confirmations=self.dest_confirmations)
        self.source.deposit("maker", "wNEAR", 1000)
        self.destination.deposit("resolver", "USDC", 990)

        self.channel = InMemorySecretChannel()
        self.policy = TimelockPolicy(3600, 7200, clock_skew_seconds=30,
                                     finality_margin_seconds=10)
        self.coordinator = Coordinator(
            self.source, self.destination, self.policy, self.channel,
            config=CoordinatorConfig(poll_interval=60.0),
        )

    def create(self, swap_id: str = "swap-1", **overrides):
        values = dict(maker="maker", maker_dest="0xMaker", token="wNEAR", amount=1000,
                      dest_token="USDC", min_return=990, secret=SECRET)
        values.update(overrides)
        return self.coordinator.create_swap(swap_id, **values)

    def step_until(self, swap_id: str, state: SwapState, limit: int = 20):
        for _ in range(limit):
            if self.coordinator.step(swap_id) == state:
                return
        self.fail(f"swap never reached {state.value}")

    def state(self, swap_id: str = "swap-1") -> SwapState:
        return self.coordinator.registry.require(swap_id).state


class TestCreateSwap(CoordinatorTestCase):

    def test_create_locks_source(self):
        swap = self.create()
        self.assertEqual(swap.state, SwapState.CREATED)
        self.assertEqual(swap.hashlock, HASHLOCK)
        self.assertEqual(swap.source_exclusive, self.t0 + 3600)
        self.assertEqual(swap.source_recovery, self.t0 + 7200)

        escrow = self.source.get_lock(swap.source_escrow_id)
        self.assertEqual(escrow.sender, "maker")
        self.assertEqual(escrow.dest_chain, "evm")
        self.assertEqual(escrow.dest_user, "0xMaker")
        self.assertEqual(escrow.output_token, "USDC")
        self.assertEqual(escrow.min_return, 990)
        self.assertEqual(self.source.balance("maker", "wNEAR"), 0)

    def test_needs_secret_or_hashlock(self):
        with self.assertRaises(ConfigurationError):
            self.create(secret=None)

    def test_hashlock_only(self):
        swap = self.create(secret=None, hashlock=HASHLOCK)
        self.assertIsNone(swap.secret)
        self.assertEqual(swap.hashlock, HASHLOCK)

    def test_duplicate_swap(self):
        self.create()
        with self.assertRaises(AlreadyExists):
            self.create()

    def test_lost_create_response_is_success(self):
        """A create_lock that landed but whose response was lost is not retried into an error."""
        self.source.fail_next(after_apply=True)
        swap = self.create()
        self.assertEqual(swap.state, SwapState.CREATED)
        self.assertEqual(self.source.balance("maker", "wNEAR"), 0)

    def test_mismatched_commitments_refused(self):
        destination = InMemoryEscrowLedger(HashCommitment("keccak256"), clock=self.clock)
        with self.assertRaises(ConfigurationError):
            Coordinator(self.source, destination, self.policy, self.channel)


class TestRegisterResolver(CoordinatorTestCase):

    def test_register(self):
        self.create()
        swap = self.coordinator.register_resolver("swap-1", "resolver")
        self.assertEqual(swap.state, SwapState.RESOLVER_REGISTERED)
        self.assertEqual(swap.resolver_dest, "resolver")
        self.assertEqual(self.source.get_lock(swap.source_escrow_id).resolver, "resolver")

    def test_second_resolver_loses(self):
        self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        with self.assertRaises(AlreadyRegistered):
            self.coordinator.register_resolver("swap-1", "other")

    def test_retried_registration_is_idempotent(self):
        self.create()
        self.source.fail_next(after_apply=True)
        swap = self.coordinator.register_resolver("swap-1", "resolver")
        self.assertEqual(swap.state, SwapState.RESOLVER_REGISTERED)


class TestHappyPath(CoordinatorTestCase):

    def test_drive_to_completion(self):
        self.create()
        self.coordinator.register_resolver("swap-1", "resolver")

        state = self.coordinator.drive("swap-1")

        self.assertEqual(state, SwapState.COMPLETED)
        swap = self.coordinator.registry.require("swap-1")
        self.assertTrue(swap.source_withdrawn)
        self.assertTrue(swap.dest_withdrawn)
        self.assertEqual(self.destination.balance("0xMaker", "USDC"), 990)
        self.assertEqual(self.source.balance("resolver", "wNEAR"), 1000)
        self.assertTrue(self.channel.is_public("swap-1"))

    def test_transition_order(self):
        self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        seen = []
        while self.state() != SwapState.COMPLETED:
            seen.append(self.coordinator.step("swap-1"))
        self.assertEqual(seen, [
            SwapState.SOURCE_FINALIZED,
            SwapState.DESTINATION_LOCKED,
            SwapState.SECRET_DISCLOSED,
            SwapState.DESTINATION_WITHDRAWN,
            SwapState.COMPLETED,
        ])

    def test_destination_respects_safety_margin(self):
        swap = self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.DESTINATION_LOCKED)
        escrow = self.destination.get_lock(swap.dest_escrow_id)
        self.assertLessEqual(escrow.timelock_recovery + 10 + 30, swap.source_exclusive)
        self.assertEqual(escrow.recipient, "0xMaker")
        self.assertEqual(escrow.resolver, "resolver")

    def test_terminal_step_is_noop(self):
        self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        self.coordinator.drive("swap-1")
        self.assertEqual(self.coordinator.step("swap-1"), SwapState.COMPLETED)


class TestFinalityGating(CoordinatorTestCase):

    source_confirmations = 3
    dest_confirmations = 3

    def test_waits_for_depth(self):
        self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        self.assertEqual(self.coordinator.step("swap-1"), SwapState.RESOLVER_REGISTERED)

        state = self.coordinator.drive("swap-1")
        self.assertEqual(state, SwapState.COMPLETED)
        self.assertGreater(self.clock.now(), self.t0)


class TestIdempotentCompletion(CoordinatorTestCase):

    def test_lost_withdraw_response(self):
        """The retry of a withdrawal that already landed sees AlreadyWithdrawn and moves on."""
        self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.SECRET_DISCLOSED)

        real_withdraw = self.destination.withdraw
        calls = []

        def lossy_withdraw(*args):
            calls.append(args)
            receipt = real_withdraw(*args)
            if len(calls) == 1:
                raise NetworkError("response lost")
            return receipt

        with patch.object(self.destination, "withdraw", side_effect=lossy_withdraw):
            state = self.coordinator.drive("swap-1")

        self.assertEqual(state, SwapState.COMPLETED)
        self.assertEqual(len(calls), 2)
        self.assertEqual(self.destination.balance("0xMaker", "USDC"), 990)


class TestFailurePaths(CoordinatorTestCase):

    def test_no_resolver_refunds(self):
        self.create()
        state = self.coordinator.drive("swap-1")
        self.assertEqual(state, SwapState.REFUNDED)
        self.assertGreaterEqual(self.clock.now(), self.t0 + 7200)
        self.assertEqual(self.source.balance("maker", "wNEAR"), 1000)
        self.assertTrue(self.coordinator.registry.require("swap-1").source_refunded)

    def test_channel_down_never_publishes(self):
        self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.DESTINATION_LOCKED)
        self.channel.available = False

        self.assertEqual(self.coordinator.step("swap-1"), SwapState.DESTINATION_LOCKED)
        status = self.coordinator.status("swap-1")
        self.assertEqual(status.category, "channel")

        state = self.coordinator.drive("swap-1")
        self.assertEqual(state, SwapState.REFUNDED)
        self.assertIsNone(self.channel.receive("swap-1", "resolver", timeout=0))
        self.assertFalse(self.channel.is_public("swap-1"))
        self.assertEqual(self.source.balance("maker", "wNEAR"), 1000)
        self.assertEqual(self.destination.balance("resolver", "USDC"), 990)

    def test_destination_hashlock_mismatch_halts(self):
        self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.SOURCE_FINALIZED)

        real_get_lock = self.destination.get_lock

        def tampered(escrow_id, min_confirmations=0):
            escrow = real_get_lock(escrow_id, min_confirmations)
            escrow.hashlock = b"\x00" * 32
            return escrow

        with patch.object(self.destination, "get_lock", side_effect=tampered):
            state = self.coordinator.step("swap-1")

        self.assertEqual(state, SwapState.HALTED)
        status = self.coordinator.status("swap-1")
        self.assertEqual(status.category, "invariant")
        self.assertIsNotNone(status.hint)
        self.assertIsNone(self.channel.receive("swap-1", "resolver", timeout=0))

    def test_destination_short_amount_halts(self):
        self.create(dest_amount=900)
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.HALTED)
        self.assertIn("min_return", self.coordinator.status("swap-1").error)

    def test_ledger_hash_disagreement_halts(self):
        """The destination contract rejects a preimage that verifies locally."""
        self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.SECRET_DISCLOSED)
        self.destination.commitment = HashCommitment("keccak256")

        self.assertEqual(self.coordinator.step("swap-1"), SwapState.HALTED)
        self.assertFalse(self.destination.get_lock(
            self.coordinator.registry.require("swap-1").dest_escrow_id).withdrawn)

    def test_late_finality_refunds_instead_of_halting(self):
        """Finality arriving too late to lock the destination leaves nothing to halt over."""
        swap = self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.SOURCE_FINALIZED)
        self.clock.set(self.t0 + 3550)

        self.assertEqual(self.coordinator.step("swap-1"), SwapState.STUCK)
        self.assertIn("destination leg", self.coordinator.status("swap-1").error)
        with self.assertRaises(NotFound):
            self.destination.get_lock(swap.dest_escrow_id)

        self.assertEqual(self.coordinator.drive("swap-1"), SwapState.REFUNDED)
        self.assertEqual(self.source.balance("maker", "wNEAR"), 1000)
        self.assertEqual(self.destination.balance("resolver", "USDC"), 990)

    def test_lost_destination_create_is_refunded(self):
        """A destination lock that landed but was never acknowledged is still refunded."""
        self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.SOURCE_FINALIZED)

        real_create = self.destination.create_lock
        calls = []

        def lossy_create(params):
            calls.append(params)
            if len(calls) == 1:
                real_create(params)
            raise NetworkError("response lost")

        with patch.object(self.destination, "create_lock", side_effect=lossy_create):
            state = self.coordinator.drive("swap-1")

        self.assertEqual(state, SwapState.REFUNDED)
        swap = self.coordinator.registry.require("swap-1")
        self.assertIsNotNone(swap.dest_recovery)
        self.assertTrue(swap.dest_refunded)
        self.assertTrue(swap.source_refunded)
        self.assertEqual(self.destination.balance("resolver", "USDC"), 990)
        self.assertEqual(self.source.balance("maker", "wNEAR"), 1000)


class TestOperatorCommands(CoordinatorTestCase):

    def test_refund_before_recovery(self):
        self.create()
        with self.assertRaises(NotYetExpired):
            self.coordinator.refund("swap-1")

    def test_refund_after_recovery(self):
        self.create()
        self.clock.set(self.t0 + 7200)
        self.assertEqual(self.coordinator.refund("swap-1"), SwapState.REFUNDED)
        self.assertEqual(self.source.balance("maker", "wNEAR"), 1000)

    def test_accept_secret(self):
        self.create(secret=None, hashlock=HASHLOCK)
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.DESTINATION_LOCKED)
        # Without the secret the swap waits
        self.assertEqual(self.coordinator.step("swap-1"), SwapState.DESTINATION_LOCKED)

        with self.assertRaises(InvalidPreimage):
            self.coordinator.accept_secret("swap-1", b"wrong")
        swap = self.coordinator.accept_secret("swap-1", SECRET)
        self.assertEqual(swap.state, SwapState.SECRET_DISCLOSED)
        self.assertEqual(self.coordinator.drive("swap-1"), SwapState.COMPLETED)

    def test_refund_halted_swap(self):
        swap = self.create(dest_amount=900)
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.HALTED)
        self.assertEqual(self.destination.balance("resolver", "USDC"), 90)
        with self.assertRaises(NotYetExpired):
            self.coordinator.refund("swap-1")

        self.clock.set(self.t0 + 7200)
        self.assertEqual(self.coordinator.refund("swap-1"), SwapState.REFUNDED)
        self.assertEqual(self.source.balance("maker", "wNEAR"), 1000)
        self.assertEqual(self.destination.balance("resolver", "USDC"), 990)
        self.assertTrue(self.destination.get_lock(swap.dest_escrow_id).refunded)

    def test_secret_from_inbox(self):
        """A resolver tracking a hashlock-only swap picks the secret up from its inbox."""
        self.create(secret=None, hashlock=HASHLOCK)
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.DESTINATION_LOCKED)

        self.channel.deliver("swap-1", b"wrong", "resolver")
        self.assertEqual(self.coordinator.step("swap-1"), SwapState.DESTINATION_LOCKED)

        self.channel.deliver("swap-1", SECRET, "resolver")
        self.assertEqual(self.coordinator.step("swap-1"), SwapState.SECRET_DISCLOSED)
        self.assertTrue(self.coordinator.registry.require("swap-1").disclosed)
        self.assertEqual(self.coordinator.drive("swap-1"), SwapState.COMPLETED)
        self.assertEqual(self.destination.balance("0xMaker", "USDC"), 990)

    def test_unknown_swap(self):
        with self.assertRaises(NotFound):
            self.coordinator.step("nope")


class TestReconcile(CoordinatorTestCase):

    def test_reconcile_after_external_withdrawal(self):
        swap = self.create()
        self.coordinator.register_resolver("swap-1", "resolver")
        self.step_until("swap-1", SwapState.SECRET_DISCLOSED)
        # Resolver withdraws from another process
        self.destination.withdraw(swap.dest_escrow_id, SECRET, "resolver")

        self.assertEqual(self.coordinator.reconcile("swap-1"), SwapState.DESTINATION_WITHDRAWN)
        self.assertEqual(self.coordinator.drive("swap-1"), SwapState.COMPLETED)


def make_escrow(**overrides) -> Escrow:
    values = dict(escrow_id=b"\x01" * 32, sender="maker", recipient=None, token="T",
                  amount=10, hashlock=HASHLOCK, timelock_exclusive=1000,
                  timelock_recovery=2000, confirmations=3)
    values.update(overrides)
    return Escrow(**values)


class TestDeriveState(unittest.TestCase):

    def test_no_source(self):
        with self.assertRaises(NotFound):
            derive_state(None, None, 0)

    def test_created(self):
        self.assertEqual(derive_state(make_escrow(), None, 500), SwapState.CREATED)

    def test_resolver(self):
        source = make_escrow(resolver="r", confirmations=1)
        self.assertEqual(derive_state(source, None, 500, source_depth=3),
                         SwapState.RESOLVER_REGISTERED)
        source.confirmations = 3
        self.assertEqual(derive_state(source, None, 500, source_depth=3),
                         SwapState.SOURCE_FINALIZED)

    def test_destination_locked(self):
        source = make_escrow(resolver="r")
        destination = make_escrow(escrow_id=b"\x02" * 32, resolver="r", timelock_exclusive=600,
                                  timelock_recovery=900)
        self.assertEqual(derive_state(source, destination, 500), SwapState.DESTINATION_LOCKED)
        self.assertEqual(derive_state(source, destination, 500, disclosed=True),
                         SwapState.SECRET_DISCLOSED)

    def test_withdrawals(self):
        source = make_escrow(resolver="r")
        destination = make_escrow(escrow_id=b"\x02" * 32, withdrawn=True)
        self.assertEqual(derive_state(source, destination, 500), SwapState.DESTINATION_WITHDRAWN)
        source.withdrawn = True
        self.assertEqual(derive_state(source, destination, 500), SwapState.COMPLETED)

    def test_expiry(self):
        self.assertEqual(derive_state(make_escrow(), None, 2000), SwapState.REFUNDING)

    def test_refunded(self):
        source = make_escrow(withdrawn=True, refunded=True)
        self.assertEqual(derive_state(source, None, 2500), SwapState.REFUNDED)
        destination = make_escrow(escrow_id=b"\x02" * 32)
        self.assertEqual(derive_state(source, destination, 2500), SwapState.REFUNDING)


if __name__ == "__main__":
    unittest.main(verbosity=2)
