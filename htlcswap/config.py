"""
Configuration structs for htlcswap.

Every ledger adapter receives its config explicitly. Environment variables
are read in exactly one place, SwapSettings.from_env(), which the CLI and
the server call at startup.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Optional, Mapping

from web3 import Web3

from .core import (
    DEFAULT_EXCLUSIVE_SECONDS, DEFAULT_RECOVERY_SECONDS, DEFAULT_CLOCK_SKEW_SECONDS,
    MIN_CONFIRMATIONS, BLOCK_TIME_SECONDS,
)
from .commitment import HASH_FUNCTIONS
from .errors import ConfigurationError
from .timelock import TimelockPolicy, finality_margin

log = logging.getLogger(__name__)


SUPPORTED_CHAINS = ("near", "evm", "memory")

NEAR_RPC_ENDPOINTS = {
    "testnet": "https://rpc.testnet.near.org",
    "mainnet": "https://rpc.mainnet.near.org",
}

# 2-64 chars, lowercase alnum separated by single '.', '-' or '_'
_NEAR_ACCOUNT_RE = re.compile(r"^(([a-z\d]+[\-_])*[a-z\d]+\.)*([a-z\d]+[\-_])*[a-z\d]+$")


def is_valid_near_account(account_id: str) -> bool:
    """Check a NEAR account id (named or 64-char implicit)."""
    if not account_id or not 2 <= len(account_id) <= 64:
        return False
    return bool(_NEAR_ACCOUNT_RE.match(account_id))


def require_evm_address(value: str, name: str) -> str:
    """Return the checksum form of an EVM address or raise ConfigurationError."""
    if not value:
        raise ConfigurationError(f"{name} is required")
    if not Web3.is_address(value):
        raise ConfigurationError(f"{name} is not a valid EVM address: {value!r}")
    return Web3.to_checksum_address(value)


@dataclass
class NearConfig:
    """NEAR escrow ledger configuration."""
    network: str = "testnet"
    rpc_url: str = ""
    escrow_contract: str = ""
    account_id: str = ""               # Signing account
    confirmations: int = MIN_CONFIRMATIONS["near"]
    finality: str = "final"            # "final" or "optimistic"
    timeout: float = 15.0
    gas: int = 100_000_000_000_000     # 100 TGas
    block_time: int = BLOCK_TIME_SECONDS["near"]

    def __post_init__(self):
        if not self.rpc_url:
            self.rpc_url = NEAR_RPC_ENDPOINTS.get(self.network, "")

    def validate(self):
        if not self.rpc_url:
            raise ConfigurationError(f"No NEAR RPC for network {self.network!r}")
        if not is_valid_near_account(self.escrow_contract):
            raise ConfigurationError(
                f"NEAR escrow contract is not a valid account id: {self.escrow_contract!r}"
            )
        if self.account_id and not is_valid_near_account(self.account_id):
            raise ConfigurationError(f"Invalid NEAR account id: {self.account_id!r}")
        if self.confirmations < 1:
            raise ConfigurationError("NEAR confirmations must be >= 1")
        if self.finality not in ("final", "optimistic"):
            raise ConfigurationError(f"Unknown NEAR finality: {self.finality!r}")


@dataclass
class EVMConfig:
    """EVM escrow ledger configuration."""
    rpc_url: str = ""
    chain_id: int = 0
    escrow_contract: str = ""
    private_key: str = field(default="", repr=False)
    confirmations: int = MIN_CONFIRMATIONS["evm"]
    timeout: float = 120.0
    gas_price_multiplier: float = 1.1
    block_time: int = BLOCK_TIME_SECONDS["evm"]

    def validate(self):
        if not self.rpc_url:
            raise ConfigurationError("EVM RPC URL is required")
        if self.chain_id <= 0:
            raise ConfigurationError(f"Invalid EVM chain id: {self.chain_id}")
        self.escrow_contract = require_evm_address(self.escrow_contract, "EVM escrow contract")
        if not self.private_key:
            raise ConfigurationError("EVM private key is required for signing")
        key = self.private_key[2:] if self.private_key.startswith("0x") else self.private_key
        if len(key) != 64 or not re.fullmatch(r"[0-9a-fA-F]+", key):
            raise ConfigurationError("EVM private key must be 32 bytes of hex")
        if self.confirmations < 1:
            raise ConfigurationError("EVM confirmations must be >= 1")


@dataclass
class TimelockConfig:
    """Escrow window durations in seconds."""
    exclusive_seconds: int = DEFAULT_EXCLUSIVE_SECONDS
    recovery_seconds: int = DEFAULT_RECOVERY_SECONDS
    clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS

    def validate(self):
        if self.exclusive_seconds <= 0 or self.recovery_seconds <= 0:
            raise ConfigurationError("Timelock durations must be positive")
        if self.exclusive_seconds >= self.recovery_seconds:
            raise ConfigurationError(
                f"exclusive_seconds ({self.exclusive_seconds}) must be less than "
                f"recovery_seconds ({self.recovery_seconds})"
            )
        if self.clock_skew_seconds < 0:
            raise ConfigurationError("clock_skew_seconds must be >= 0")

    def policy(self, source_finality: int = 0, dest_finality: int = 0) -> TimelockPolicy:
        """
        Build the TimelockPolicy for a ledger pair.

        The finality margin covers the destination withdrawal finalizing
        plus the source withdrawal landing.
        """
        return TimelockPolicy(
            self.exclusive_seconds,
            self.recovery_seconds,
            clock_skew_seconds=self.clock_skew_seconds,
            finality_margin_seconds=source_finality + dest_finality,
        )


@dataclass
class CoordinatorConfig:
    """State machine tuning."""
    poll_interval: float = 2.0         # Seconds between finality polls
    retry_initial: float = 1.0
    retry_max: float = 30.0
    retry_multiplier: float = 2.0
    disclose_timeout: float = 30.0

    def validate(self):
        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive")
        if self.retry_initial <= 0 or self.retry_max < self.retry_initial:
            raise ConfigurationError("retry_initial must be positive and <= retry_max")
        if self.retry_multiplier < 1:
            raise ConfigurationError("retry_multiplier must be >= 1")


@dataclass
class SwapSettings:
    """Top-level settings: which ledgers, their configs and the shared hash rule."""
    source_chain: str = "near"
    dest_chain: str = "evm"
    hash_algorithm: str = "sha256"
    near: NearConfig = field(default_factory=NearConfig)
    evm: EVMConfig = field(default_factory=EVMConfig)
    timelocks: TimelockConfig = field(default_factory=TimelockConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    registry_path: Optional[str] = None
    secret_endpoints: str = ""          # "resolver=https://host,..."

    def validate(self):
        for chain in (self.source_chain, self.dest_chain):
            if chain not in SUPPORTED_CHAINS:
                raise ConfigurationError(f"Unsupported chain: {chain!r}")
        if self.source_chain == self.dest_chain and self.source_chain != "memory":
            raise ConfigurationError("Source and destination chains must differ")
        if self.hash_algorithm not in HASH_FUNCTIONS:
            raise ConfigurationError(f"Unsupported hash algorithm: {self.hash_algorithm!r}")

        if "near" in (self.source_chain, self.dest_chain):
            self.near.validate()
        if "evm" in (self.source_chain, self.dest_chain):
            self.evm.validate()
        self.timelocks.validate()
        self.coordinator.validate()

    def chain_config(self, chain: str):
        return {"near": self.near, "evm": self.evm}.get(chain)

    def finality_seconds(self, chain: str) -> int:
        cfg = self.chain_config(chain)
        if cfg is None:
            return finality_margin(MIN_CONFIRMATIONS["memory"], BLOCK_TIME_SECONDS["memory"])
        return finality_margin(cfg.confirmations, cfg.block_time)

    def policy(self) -> TimelockPolicy:
        return self.timelocks.policy(
            source_finality=self.finality_seconds(self.source_chain),
            dest_finality=self.finality_seconds(self.dest_chain),
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SwapSettings":
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: if a numeric variable is malformed
        """
        env = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            if raw in (None, ""):
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be an integer, got {raw!r}")

        near = NearConfig(
            network=env.get("NEAR_NETWORK", "testnet"),
            rpc_url=env.get("NEAR_RPC", ""),
            escrow_contract=env.get("NEAR_ESCROW_CONTRACT", ""),
            account_id=env.get("NEAR_ACCOUNT_ID", ""),
            confirmations=_int("NEAR_CONFIRMATIONS", MIN_CONFIRMATIONS["near"]),
        )
        evm = EVMConfig(
            rpc_url=env.get("EVM_RPC", ""),
            chain_id=_int("EVM_CHAIN_ID", 0),
            escrow_contract=env.get("EVM_ESCROW_CONTRACT", ""),
            private_key=env.get("EVM_PRIVATE_KEY", ""),
            confirmations=_int("EVM_CONFIRMATIONS", MIN_CONFIRMATIONS["evm"]),
        )
        timelocks = TimelockConfig(
            exclusive_seconds=_int("HTLC_EXCLUSIVE_SECONDS", DEFAULT_EXCLUSIVE_SECONDS),
            recovery_seconds=_int("HTLC_RECOVERY_SECONDS", DEFAULT_RECOVERY_SECONDS),
            clock_skew_seconds=_int("HTLC_CLOCK_SKEW_SECONDS", DEFAULT_CLOCK_SKEW_SECONDS),
        )
        return cls(
            source_chain=env.get("HTLC_SOURCE_CHAIN", "near"),
            dest_chain=env.get("HTLC_DEST_CHAIN", "evm"),
            hash_algorithm=env.get("HTLC_HASH", "sha256"),
            near=near,
            evm=evm,
            timelocks=timelocks,
            registry_path=env.get("HTLC_REGISTRY_PATH") or None,
            secret_endpoints=env.get("HTLC_SECRET_ENDPOINTS", ""),
        )
