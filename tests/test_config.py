#!/usr/bin/env python3
"""
Settings tests: environment parsing and validation.
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.config import (
    CoordinatorConfig, EVMConfig, NearConfig, SwapSettings, TimelockConfig,
    is_valid_near_account,
)
from htlcswap.errors import ConfigurationError

ESCROW = "0x" + "cc" * 20
KEY = "11" * 32


def valid_env(**overrides):
    env = {
        "HTLC_SOURCE_CHAIN": "near",
        "HTLC_DEST_CHAIN": "evm",
        "NEAR_ESCROW_CONTRACT": "htlc.testnet",
        "NEAR_ACCOUNT_ID": "alice.testnet",
        "EVM_RPC": "https://sepolia.base.org",
        "EVM_CHAIN_ID": "84532",
        "EVM_ESCROW_CONTRACT": ESCROW,
        "EVM_PRIVATE_KEY": KEY,
    }
    env.update(overrides)
    return env


class TestFromEnv(unittest.TestCase):

    def test_defaults(self):
        settings = SwapSettings.from_env({})
        self.assertEqual(settings.source_chain, "near")
        self.assertEqual(settings.dest_chain, "evm")
        self.assertEqual(settings.hash_algorithm, "sha256")
        self.assertEqual(settings.near.rpc_url, "https://rpc.testnet.near.org")
        self.assertIsNone(settings.registry_path)

    def test_values(self):
        settings = SwapSettings.from_env(valid_env(
            HTLC_EXCLUSIVE_SECONDS="600", HTLC_RECOVERY_SECONDS="1200",
            HTLC_REGISTRY_PATH="/tmp/swaps.json", EVM_CONFIRMATIONS="5",
        ))
        self.assertEqual(settings.timelocks.exclusive_seconds, 600)
        self.assertEqual(settings.timelocks.recovery_seconds, 1200)
        self.assertEqual(settings.registry_path, "/tmp/swaps.json")
        self.assertEqual(settings.evm.confirmations, 5)
        self.assertEqual(settings.evm.chain_id, 84532)
        settings.validate()

    def test_bad_integer(self):
        with self.assertRaises(ConfigurationError):
            SwapSettings.from_env({"EVM_CHAIN_ID": "base"})

    def test_private_key_not_in_repr(self):
        settings = SwapSettings.from_env(valid_env())
        self.assertNotIn(KEY, repr(settings))


class TestValidate(unittest.TestCase):

    def test_unsupported_chain(self):
        with self.assertRaises(ConfigurationError):
            SwapSettings.from_env(valid_env(HTLC_SOURCE_CHAIN="btc")).validate()

    def test_same_chain(self):
        with self.assertRaises(ConfigurationError):
            SwapSettings.from_env(valid_env(HTLC_DEST_CHAIN="near")).validate()

    def test_memory_pair_allowed(self):
        SwapSettings(source_chain="memory", dest_chain="memory").validate()

    def test_unknown_hash(self):
        with self.assertRaises(ConfigurationError):
            SwapSettings(source_chain="memory", dest_chain="memory", hash_algorithm="md5").validate()

    def test_evm(self):
        EVMConfig(rpc_url="http://x", chain_id=1, escrow_contract=ESCROW, private_key=KEY).validate()
        bad = [
            EVMConfig(chain_id=1, escrow_contract=ESCROW, private_key=KEY),
            EVMConfig(rpc_url="http://x", escrow_contract=ESCROW, private_key=KEY),
            EVMConfig(rpc_url="http://x", chain_id=1, escrow_contract="0x123", private_key=KEY),
            EVMConfig(rpc_url="http://x", chain_id=1, escrow_contract=ESCROW),
            EVMConfig(rpc_url="http://x", chain_id=1, escrow_contract=ESCROW, private_key="abc"),
        ]
        for config in bad:
            with self.assertRaises(ConfigurationError):
                config.validate()

    def test_near(self):
        NearConfig(escrow_contract="htlc.testnet").validate()
        with self.assertRaises(ConfigurationError):
            NearConfig(escrow_contract="Not Valid").validate()
        with self.assertRaises(ConfigurationError):
            NearConfig(network="localnet", escrow_contract="htlc.testnet").validate()
        with self.assertRaises(ConfigurationError):
            NearConfig(escrow_contract="htlc.testnet", finality="soon").validate()

    def test_near_account_ids(self):
        self.assertTrue(is_valid_near_account("alice.testnet"))
        self.assertTrue(is_valid_near_account("a" * 64))
        self.assertFalse(is_valid_near_account("a"))
        self.assertFalse(is_valid_near_account("Alice.testnet"))
        self.assertFalse(is_valid_near_account("alice..testnet"))

    def test_timelocks(self):
        with self.assertRaises(ConfigurationError):
            TimelockConfig(exclusive_seconds=7200, recovery_seconds=3600).validate()
        with self.assertRaises(ConfigurationError):
            TimelockConfig(clock_skew_seconds=-1).validate()

    def test_coordinator(self):
        with self.assertRaises(ConfigurationError):
            CoordinatorConfig(poll_interval=0).validate()
        with self.assertRaises(ConfigurationError):
            CoordinatorConfig(retry_initial=10, retry_max=1).validate()

    def test_policy_margin_from_finality(self):
        settings = SwapSettings.from_env(valid_env())
        policy = settings.policy()
        expected = settings.finality_seconds("near") + settings.finality_seconds("evm")
        self.assertEqual(policy.finality_margin_seconds, expected)


if __name__ == "__main__":
    unittest.main(verbosity=2)
