"""
Escrow ledgers, one per chain.

Every ledger enforces the same escrow rules:
1. Withdrawal needs the preimage of the hashlock
2. Before timelock_exclusive only the registered resolver may withdraw
3. From timelock_recovery on, only a refund to the sender is possible
"""

from .base import EscrowLedger, error_from_reason
from .memory import InMemoryEscrowLedger, SimulatedClock
from .evm import EVMEscrowLedger
from .near import NearEscrowLedger

__all__ = [
    "EscrowLedger",
    "error_from_reason",
    "InMemoryEscrowLedger",
    "SimulatedClock",
    "EVMEscrowLedger",
    "NearEscrowLedger",
]
