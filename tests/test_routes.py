#!/usr/bin/env python3
"""
HTTP API tests: status, swap listing and the resolver secret inbox.
"""

import sys
import os
import hashlib
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient

from htlcswap.commitment import HashCommitment
from htlcswap.config import CoordinatorConfig
from htlcswap.core import Leg, SwapState, derive_escrow_id
from htlcswap.htlc.memory import InMemoryEscrowLedger, SimulatedClock
from htlcswap.server import create_app
from htlcswap.swap.coordinator import Coordinator
from htlcswap.swap.registry import Swap, SwapRegistry
from htlcswap.swap.secret_channel import HttpSecretChannel, InMemorySecretChannel
from htlcswap.timelock import TimelockPolicy

SECRET = b"\x07" * 32


def make_swap(swap_id, state=SwapState.RESOLVER_REGISTERED):
    return Swap(
        swap_id=swap_id,
        state=state,
        maker="alice.testnet",
        maker_dest="0xMaker",
        hashlock=hashlib.sha256(SECRET).digest(),
        source_chain="near",
        dest_chain="evm",
        source_escrow_id=derive_escrow_id(swap_id, Leg.SOURCE),
        dest_escrow_id=derive_escrow_id(swap_id, Leg.DESTINATION),
        token="usdc.testnet",
        amount=1000,
        dest_token="0xToken",
        min_return=990,
        source_exclusive=1000,
        source_recovery=2000,
        resolver="bob.testnet",
        resolver_dest="0xResolver",
    )


class TestRoutes(unittest.TestCase):

    def setUp(self):
        self.registry = SwapRegistry()
        self.registry.add(make_swap("swap-1"))
        self.registry.add(make_swap("swap-2", state=SwapState.COMPLETED))
        self.inbox = InMemorySecretChannel()
        self.app = create_app(self.registry, self.inbox, HashCommitment("sha256"))
        self.client = TestClient(self.app)

    def test_status(self):
        data = self.client.get("/api/status").json()
        self.assertEqual(data["status"], "ok")
        self.assertEqual(data["hash"], "sha256")
        self.assertEqual(data["swaps_total"], 2)
        self.assertEqual(data["swaps_active"], 1)

    def test_get_swap(self):
        response = self.client.get("/api/swap/swap-1")
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["state"], "resolver_registered")
        self.assertEqual(data["resolver"], "bob.testnet")
        self.assertNotIn("secret", data)

    def test_unknown_swap(self):
        response = self.client.get("/api/swap/nope")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"], "Swap not found")

    def test_list_filter(self):
        data = self.client.get("/api/swaps", params={"state": "completed"}).json()
        self.assertEqual(data["count"], 1)
        self.assertEqual(data["swaps"][0]["swap_id"], "swap-2")
        self.assertEqual(self.client.get("/api/swaps", params={"state": "bogus"}).status_code, 400)

    def test_secret_accepted(self):
        response = self.client.post("/api/secret", json={
            "swap_id": "swap-1", "resolver": "0xResolver", "preimage": "0x" + SECRET.hex(),
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "accepted")
        self.assertEqual(self.inbox.receive("swap-1", "0xResolver", timeout=0), SECRET)

    def test_secret_wrong_resolver(self):
        response = self.client.post("/api/secret", json={
            "swap_id": "swap-1", "resolver": "0xMallory", "preimage": SECRET.hex(),
        })
        self.assertEqual(response.status_code, 403)

    def test_secret_mismatch(self):
        response = self.client.post("/api/secret", json={
            "swap_id": "swap-1", "resolver": "0xResolver", "preimage": "ab" * 32,
        })
        self.assertEqual(response.status_code, 400)
        self.assertIsNone(self.inbox.receive("swap-1", "0xResolver", timeout=0))

    def test_secret_not_hex(self):
        response = self.client.post("/api/secret", json={
            "swap_id": "swap-1", "resolver": "0xResolver", "preimage": "zz",
        })
        self.assertEqual(response.status_code, 400)

    def test_secret_unknown_swap(self):
        response = self.client.post("/api/secret", json={
            "swap_id": "nope", "resolver": "0xResolver", "preimage": SECRET.hex(),
        })
        self.assertEqual(response.status_code, 404)


class TestSecretInboxDrivesSwap(unittest.TestCase):
    """A secret posted to the inbox moves the resolver's swap forward."""

    def setUp(self):
        self.clock = SimulatedClock()
        self.commitment = HashCommitment("sha256")
        self.source = InMemoryEscrowLedger(self.commitment, clock=self.clock, chain="near")
        self.destination = InMemoryEscrowLedger(self.commitment, clock=self.clock, chain="evm")
        self.source.deposit("maker", "wNEAR", 1000)
        self.destination.deposit("resolver", "USDC", 990)

        self.inbox = InMemorySecretChannel()
        self.coordinator = Coordinator(
            self.source, self.destination,
            TimelockPolicy(3600, 7200, clock_skew_seconds=30, finality_margin_seconds=10),
            HttpSecretChannel({}, inbox=self.inbox),
            config=CoordinatorConfig(poll_interval=60.0),
        )
        self.client = TestClient(create_app(self.coordinator.registry, self.inbox,
                                            self.commitment))

    def test_posted_secret_completes_swap(self):
        self.coordinator.create_swap(
            "swap-1", maker="maker", maker_dest="0xMaker", token="wNEAR", amount=1000,
            dest_token="USDC", min_return=990, hashlock=hashlib.sha256(SECRET).digest(),
        )
        self.coordinator.register_resolver("swap-1", "resolver")
        for _ in range(5):
            if self.coordinator.step("swap-1") == SwapState.DESTINATION_LOCKED:
                break
        self.assertEqual(self.coordinator.step("swap-1"), SwapState.DESTINATION_LOCKED)

        response = self.client.post("/api/secret", json={
            "swap_id": "swap-1", "resolver": "resolver", "preimage": SECRET.hex(),
        })
        self.assertEqual(response.status_code, 200)

        self.assertEqual(self.coordinator.step("swap-1"), SwapState.SECRET_DISCLOSED)
        self.assertEqual(self.coordinator.drive("swap-1"), SwapState.COMPLETED)
        self.assertEqual(self.destination.balance("0xMaker", "USDC"), 990)
        self.assertEqual(self.source.balance("resolver", "wNEAR"), 1000)


if __name__ == "__main__":
    unittest.main(verbosity=2)
