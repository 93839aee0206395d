"""
Core types and interfaces for htlcswap.
"""

import time
from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Union

from web3 import Web3


class Leg(Enum):
    """Swap leg. Source is funded by the maker, destination by the resolver."""
    SOURCE = "source"
    DESTINATION = "destination"


class SwapState(Enum):
    """Swap lifecycle states."""
    CREATED = "created"                              # Maker locked on source ledger
    RESOLVER_REGISTERED = "resolver_registered"      # Resolver won exclusivity
    SOURCE_FINALIZED = "source_finalized"            # Source lock reached confirmation depth
    DESTINATION_LOCKED = "destination_locked"        # Matching destination lock finalized and verified
    SECRET_DISCLOSED = "secret_disclosed"            # Preimage delivered privately to resolver
    DESTINATION_WITHDRAWN = "destination_withdrawn"  # Maker paid on destination (finalized)
    COMPLETED = "completed"                          # Resolver withdrew source leg
    REFUNDING = "refunding"                          # Recovery window open, refunds in progress
    REFUNDED = "refunded"                            # All funded legs returned to their senders
    STUCK = "stuck"                                  # Terminal leg error, refund not yet eligible
    HALTED = "halted"                                # Invariant violation, operator required


TERMINAL_STATES = frozenset({SwapState.COMPLETED, SwapState.REFUNDED, SwapState.HALTED})


# =============================================================================
# Hashlock / identifier encoding
# =============================================================================

BYTES32 = 32

BytesLike = Union[bytes, bytearray, str, List[int]]


def to_bytes32(value: BytesLike, name: str = "value") -> bytes:
    """
    Normalize a 32-byte value received from a ledger interface.

    Accepts raw bytes, hex text with or without a 0x prefix (any case),
    or a JSON array of byte values (borsh [u8; 32] rendered by a contract).

    Raises:
        ValueError: if the value is not exactly 32 bytes
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        text = value[2:] if value[:2] in ("0x", "0X") else value
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise ValueError(f"{name} is not valid hex: {value!r}")
    elif isinstance(value, (list, tuple)):
        try:
            raw = bytes(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name} is not a byte array")
    else:
        raise ValueError(f"Unsupported {name} type: {type(value).__name__}")

    if len(raw) != BYTES32:
        raise ValueError(f"{name} must be {BYTES32} bytes, got {len(raw)}")
    return raw


def to_hex(value: bytes, prefix: bool = False) -> str:
    """Lowercase hex for a byte string, optionally 0x-prefixed."""
    text = bytes(value).hex()
    return "0x" + text if prefix else text


def derive_escrow_id(swap_id: str, leg: Leg) -> bytes:
    """
    Deterministic escrow identifier for one leg of a swap.

    Both parties compute keccak256("<swap_id>:<leg>") independently, so no
    message exchange is needed to agree on where each leg lives.
    """
    if not swap_id:
        raise ValueError("swap_id is required")
    return bytes(Web3.keccak(text=f"{swap_id}:{leg.value}"))


def mask_secret(secret: Union[str, bytes, None], visible_prefix: int = 8,
                visible_suffix: int = 4) -> str:
    """Mask a secret for safe logging. Never log full preimages."""
    if isinstance(secret, (bytes, bytearray)):
        secret = bytes(secret).hex()
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"


# =============================================================================
# Ledger records
# =============================================================================

@dataclass
class LockParams:
    """Arguments for EscrowLedger.create_lock."""
    escrow_id: bytes
    sender: str
    recipient: Optional[str]
    token: str
    amount: int                    # Smallest token unit
    hashlock: bytes                # 32-byte digest
    timelock_exclusive: int        # Unix seconds
    timelock_recovery: int         # Unix seconds

    # Order terms carried by the source leg
    dest_chain: str = ""
    dest_user: str = ""
    output_token: str = ""
    min_return: int = 0


@dataclass
class Escrow:
    """One leg's escrow as reported by its ledger."""
    escrow_id: bytes
    sender: str
    recipient: Optional[str]
    token: str
    amount: int
    hashlock: bytes
    timelock_exclusive: int
    timelock_recovery: int
    withdrawn: bool = False
    refunded: bool = False
    resolver: Optional[str] = None

    dest_chain: str = ""
    dest_user: str = ""
    output_token: str = ""
    min_return: int = 0

    chain: str = ""
    confirmations: int = 0         # Depth of the last state change when queried

    @property
    def status(self) -> str:
        if self.refunded:
            return "refunded"
        if self.withdrawn:
            return "withdrawn"
        return "active"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["escrow_id"] = to_hex(self.escrow_id)
        data["hashlock"] = to_hex(self.hashlock)
        data["status"] = self.status
        return data


@dataclass
class TxReceipt:
    """A ledger transaction accepted into a block."""
    chain: str
    tx_hash: str
    block_number: int
    confirmations: int = 0
    data: Dict[str, Any] = field(default_factory=dict)

    def is_final(self, depth: int) -> bool:
        return self.confirmations >= depth


# =============================================================================
# Clocks
# =============================================================================

class SystemClock:
    """Wall clock in unix seconds."""

    def now(self) -> int:
        return int(time.time())

    def sleep(self, seconds: float):
        time.sleep(seconds)


# =============================================================================
# Constants
# =============================================================================

# Default windows (seconds). Source: exclusive 1h, recovery 2h.
DEFAULT_EXCLUSIVE_SECONDS = 3600
DEFAULT_RECOVERY_SECONDS = 7200

# Default clock skew tolerated between the two ledgers
DEFAULT_CLOCK_SKEW_SECONDS = 30

# Minimum confirmations by default
MIN_CONFIRMATIONS = {
    "near": 1,     # Doomslug finality is reported as a final block
    "evm": 3,
    "memory": 1,
}

# Approximate block times used to turn a confirmation depth into seconds
BLOCK_TIME_SECONDS = {
    "near": 1,
    "evm": 12,
    "memory": 1,
}
