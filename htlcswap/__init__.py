"""
htlcswap - HTLC atomic swap coordinator

Moves value between two independent ledgers (NEAR and EVM chains, or the
in-process simulation ledger) with hash-time-locked escrows: either both
legs settle or both are refunded.

Usage:
    from htlcswap import SwapSettings, build_coordinator

    settings = SwapSettings.from_env()
    coordinator = build_coordinator(settings)

    swap = coordinator.create_swap(swap_id, maker, maker_dest, token, amount,
                                   dest_token, min_return, secret=secret)
    coordinator.register_resolver(swap.swap_id, resolver)
    coordinator.drive(swap.swap_id)
"""

from .core import (
    Leg,
    SwapState,
    Escrow,
    LockParams,
    TxReceipt,
    TERMINAL_STATES,
    derive_escrow_id,
    mask_secret,
)
from .commitment import HashCommitment, generate_secret, verify_preimage
from .timelock import TimelockPolicy
from .config import SwapSettings, NearConfig, EVMConfig, TimelockConfig, CoordinatorConfig
from .errors import SwapError, exit_code_for

from .htlc import EscrowLedger, InMemoryEscrowLedger, SimulatedClock, EVMEscrowLedger, NearEscrowLedger
from .swap import Coordinator, SwapRegistry, SwapWatcher, WatcherConfig, derive_state
from .factory import build_ledger, build_coordinator

__version__ = "0.1.0"
__all__ = [
    # Core types
    "Leg",
    "SwapState",
    "Escrow",
    "LockParams",
    "TxReceipt",
    "TERMINAL_STATES",
    "derive_escrow_id",
    "mask_secret",
    # Commitment / timelocks
    "HashCommitment",
    "generate_secret",
    "verify_preimage",
    "TimelockPolicy",
    # Config
    "SwapSettings",
    "NearConfig",
    "EVMConfig",
    "TimelockConfig",
    "CoordinatorConfig",
    # Errors
    "SwapError",
    "exit_code_for",
    # Ledgers
    "EscrowLedger",
    "InMemoryEscrowLedger",
    "SimulatedClock",
    "EVMEscrowLedger",
    "NearEscrowLedger",
    # Coordination
    "Coordinator",
    "SwapRegistry",
    "SwapWatcher",
    "WatcherConfig",
    "derive_state",
    "build_ledger",
    "build_coordinator",
]
