"""
EscrowLedger interface.

One implementation per chain. Every implementation takes the swap's shared
HashCommitment at construction time so both legs hash secrets the same way,
and translates chain-specific failures into htlcswap.errors at its boundary.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from .. import errors
from ..commitment import HashCommitment
from ..core import Escrow, LockParams, TxReceipt, SystemClock

log = logging.getLogger(__name__)


# Contract failure text -> error. Checked in order; first substring match wins.
# Covers the Solidity revert reasons and the NEAR panic messages.
FAILURE_REASONS = [
    ("HTLC not found", errors.NotFound),
    ("Escrow already claimed or refunded", errors.AlreadyWithdrawn),
    ("Time lock has not expired yet", errors.NotYetExpired),
    ("Time lock must be in the future", errors.InvalidTimelockOrdering),
    ("Only the receiver can claim", errors.ExclusivePeriodViolation),
    ("Escrow not found", errors.NotFound),
    ("EscrowNotFound", errors.NotFound),
    ("Invalid preimage", errors.InvalidPreimage),
    ("InvalidPreimage", errors.InvalidPreimage),
    ("Not expired", errors.NotYetExpired),
    ("NotExpired", errors.NotYetExpired),
    ("Expired", errors.Expired),
    ("Only resolver", errors.ExclusivePeriodViolation),
    ("No resolver set", errors.ExclusivePeriodViolation),
    ("ExclusivePeriod", errors.ExclusivePeriodViolation),
    ("Resolver already set", errors.AlreadyRegistered),
    ("AlreadyRegistered", errors.AlreadyRegistered),
    ("Exclusive period over", errors.ExclusiveWindowClosed),
    ("ExclusiveWindowClosed", errors.ExclusiveWindowClosed),
    ("Escrow exists", errors.AlreadyExists),
    ("AlreadyExists", errors.AlreadyExists),
    ("Invalid timelock", errors.InvalidTimelockOrdering),
    ("InvalidTimelock", errors.InvalidTimelockOrdering),
    ("exceeds balance", errors.InsufficientFunds),
    ("Not enough balance", errors.InsufficientFunds),
    ("Withdrawn", errors.AlreadyWithdrawn),
    ("AlreadyWithdrawn", errors.AlreadyWithdrawn),
]


def error_from_reason(reason: str, chain: str = "") -> errors.SwapError:
    """Translate a contract revert / panic message into the error taxonomy."""
    prefix = f"{chain}: " if chain else ""
    for needle, error_cls in FAILURE_REASONS:
        if needle in reason:
            return error_cls(f"{prefix}{reason}")
    return errors.ProtocolError(f"{prefix}contract call failed: {reason}")


class EscrowLedger(ABC):
    """Uniform create/query/withdraw/refund access to one chain's escrow contract."""

    chain = ""

    def __init__(self, commitment: HashCommitment, confirmations: int = 1, clock=None):
        if not isinstance(commitment, HashCommitment):
            raise TypeError("commitment must be a HashCommitment")
        self.commitment = commitment
        self.required_confirmations = confirmations
        self.clock = clock or SystemClock()

    def __repr__(self):
        return f"{self.__class__.__name__}(chain={self.chain!r}, {self.commitment!r})"

    # ------------------------------------------------------------------
    # Account identity
    # ------------------------------------------------------------------

    @property
    def signer(self) -> Optional[str]:
        """Account this ledger signs for, or None if it accepts any caller."""
        return None

    def normalize_account(self, account: Optional[str]) -> Optional[str]:
        """Canonical form of an account id on this chain."""
        return account

    # ------------------------------------------------------------------
    # Escrow operations
    # ------------------------------------------------------------------

    @abstractmethod
    def create_lock(self, params: LockParams) -> Escrow:
        """
        Move `params.amount` from the sender into a new escrow.

        Raises:
            AlreadyExists, InsufficientFunds, InvalidTimelockOrdering, NetworkError
        """

    @abstractmethod
    def get_lock(self, escrow_id: bytes, min_confirmations: int = 0) -> Escrow:
        """
        Query an escrow.

        With min_confirmations > 0 the result reflects only state that has
        reached that depth.

        Raises:
            NotFound, NetworkError
        """

    @abstractmethod
    def register_resolver(self, escrow_id: bytes, resolver: str) -> TxReceipt:
        """
        Claim exclusivity on an escrow. At most one caller ever succeeds.

        Raises:
            AlreadyRegistered, ExclusiveWindowClosed, NotFound, NetworkError
        """

    @abstractmethod
    def withdraw(self, escrow_id: bytes, preimage: bytes, caller: str) -> TxReceipt:
        """
        Release the escrow with the preimage.

        Raises:
            NotFound, AlreadyWithdrawn, InvalidPreimage, Expired,
            ExclusivePeriodViolation, NetworkError
        """

    @abstractmethod
    def refund(self, escrow_id: bytes, caller: str) -> TxReceipt:
        """
        Return the escrow to its sender once recovery opens.

        Raises:
            NotFound, AlreadyWithdrawn, NotYetExpired, NetworkError
        """

    # ------------------------------------------------------------------
    # Finality
    # ------------------------------------------------------------------

    @abstractmethod
    def confirmations(self, receipt: TxReceipt) -> int:
        """Current confirmation depth of a receipt."""

    def is_final(self, receipt: TxReceipt, depth: Optional[int] = None) -> bool:
        required = self.required_confirmations if depth is None else depth
        receipt.confirmations = self.confirmations(receipt)
        return receipt.is_final(required)

    def now(self) -> int:
        """Ledger time in unix seconds."""
        return self.clock.now()
