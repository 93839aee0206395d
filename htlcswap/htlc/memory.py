"""
In-process escrow ledger.

Implements the escrow rules exactly as the on-chain contracts do, against a
simulated clock that mines one block every `block_time` seconds. Used for
dry runs (`--chain memory`), the demo, and the protocol tests.

Each escrow keeps a versioned history keyed by block height so queries can
ask for state at a confirmation depth, the same way a finality-aware RPC
query would behave.
"""

import copy
import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from web3 import Web3

from ..commitment import HashCommitment
from ..core import Escrow, LockParams, TxReceipt, BYTES32, to_hex
from ..errors import (
    NetworkError, NotFound, AlreadyExists, InsufficientFunds,
    InvalidTimelockOrdering, AlreadyRegistered, ExclusiveWindowClosed,
    InvalidPreimage, AlreadyWithdrawn, ExclusivePeriodViolation,
    Expired, NotYetExpired,
)
from .base import EscrowLedger

log = logging.getLogger(__name__)


class SimulatedClock:
    """
    Manually advanced clock in unix seconds.

    sleep() advances time instead of blocking, so polling loops driven by
    this clock run instantly.
    """

    def __init__(self, start: int = 1_700_000_000):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def advance(self, seconds: float):
        with self._lock:
            self._now += max(0, int(round(seconds)))

    def set(self, timestamp: int):
        with self._lock:
            if timestamp < self._now:
                raise ValueError("clock cannot move backwards")
            self._now = timestamp

    def sleep(self, seconds: float):
        self.advance(max(1, seconds))


class InMemoryEscrowLedger(EscrowLedger):
    """Reference EscrowLedger holding balances and escrows in memory."""

    def __init__(self, commitment: HashCommitment, clock: Optional[SimulatedClock] = None,
                 chain: str = "memory", confirmations: int = 1, block_time: int = 1):
        super().__init__(commitment, confirmations=confirmations,
                         clock=clock or SimulatedClock())
        self.chain = chain
        self.block_time = max(1, block_time)
        self._genesis = self.clock.now()
        self._lock = threading.RLock()

        self._balances: Dict[Tuple[str, str], int] = defaultdict(int)
        self._history: Dict[bytes, List[Tuple[int, Escrow]]] = {}
        self._tx_blocks: Dict[str, int] = {}
        self._tx_count = 0

        self._faults: List[Tuple[Exception, bool]] = []

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    def height(self) -> int:
        return (self.clock.now() - self._genesis) // self.block_time + 1

    def deposit(self, account: str, token: str, amount: int):
        """Credit an account (faucet)."""
        with self._lock:
            self._balances[(account, token)] += amount

    def balance(self, account: str, token: str) -> int:
        with self._lock:
            return self._balances[(account, token)]

    def fail_next(self, count: int = 1, error: Optional[Exception] = None,
                  after_apply: bool = False):
        """
        Make the next `count` calls fail with a network error.

        With after_apply=True the call takes effect on the ledger but the
        caller still sees the error, as when an RPC response is lost.
        """
        with self._lock:
            for _ in range(count):
                self._faults.append(
                    (error or NetworkError(f"{self.chain}: simulated RPC failure"), after_apply)
                )

    def _fault(self) -> Optional[Tuple[Exception, bool]]:
        if self._faults:
            return self._faults.pop(0)
        return None

    def _run(self, operation, *args):
        """Apply an operation under the ledger lock, honouring injected faults."""
        with self._lock:
            fault = self._fault()
            if fault and not fault[1]:
                raise fault[0]
            result = operation(*args)
            if fault:
                raise fault[0]
            return result

    # ------------------------------------------------------------------
    # Internal state
    # ------------------------------------------------------------------

    def _latest(self, escrow_id: bytes) -> Escrow:
        versions = self._history.get(escrow_id)
        if not versions:
            raise NotFound(f"{self.chain}: escrow {to_hex(escrow_id)} not found")
        return copy.copy(versions[-1][1])

    def _commit(self, escrow: Escrow) -> TxReceipt:
        height = self.height()
        self._history.setdefault(escrow.escrow_id, []).append((height, copy.copy(escrow)))

        self._tx_count += 1
        tx_hash = Web3.keccak(text=f"{self.chain}:{self._tx_count}").hex()
        self._tx_blocks[tx_hash] = height
        return TxReceipt(chain=self.chain, tx_hash=tx_hash, block_number=height,
                         confirmations=1, data={"escrow_id": to_hex(escrow.escrow_id)})

    def _transfer(self, account: str, token: str, amount: int):
        self._balances[(account, token)] += amount

    # ------------------------------------------------------------------
    # EscrowLedger
    # ------------------------------------------------------------------

    def create_lock(self, params: LockParams) -> Escrow:
        return self._run(self._create_lock, params)

    def _create_lock(self, params: LockParams) -> Escrow:
        if len(params.hashlock) != BYTES32:
            raise ValueError(f"hashlock must be {BYTES32} bytes")
        if params.amount <= 0:
            raise ValueError("amount must be positive")
        if params.escrow_id in self._history:
            raise AlreadyExists(f"{self.chain}: escrow {to_hex(params.escrow_id)} exists")

        now = self.clock.now()
        if params.timelock_exclusive >= params.timelock_recovery:
            raise InvalidTimelockOrdering(
                f"timelock_exclusive {params.timelock_exclusive} >= "
                f"timelock_recovery {params.timelock_recovery}"
            )
        if params.timelock_exclusive <= now:
            raise InvalidTimelockOrdering(
                f"timelock_exclusive {params.timelock_exclusive} is not in the future"
            )

        available = self._balances[(params.sender, params.token)]
        if available < params.amount:
            raise InsufficientFunds(
                f"{params.sender} holds {available} {params.token}, needs {params.amount}"
            )

        self._transfer(params.sender, params.token, -params.amount)
        escrow = Escrow(
            escrow_id=params.escrow_id,
            sender=params.sender,
            recipient=params.recipient,
            token=params.token,
            amount=params.amount,
            hashlock=bytes(params.hashlock),
            timelock_exclusive=params.timelock_exclusive,
            timelock_recovery=params.timelock_recovery,
            dest_chain=params.dest_chain,
            dest_user=params.dest_user,
            output_token=params.output_token,
            min_return=params.min_return,
            chain=self.chain,
        )
        receipt = self._commit(escrow)
        log.info(f"{self.chain}: escrow {to_hex(escrow.escrow_id)[:16]}... locked "
                 f"{escrow.amount} {escrow.token} (block {receipt.block_number})")
        escrow.confirmations = 1
        return escrow

    def get_lock(self, escrow_id: bytes, min_confirmations: int = 0) -> Escrow:
        return self._run(self._get_lock, escrow_id, min_confirmations)

    def _get_lock(self, escrow_id: bytes, min_confirmations: int) -> Escrow:
        height = self.height()
        for block, version in reversed(self._history.get(escrow_id, [])):
            depth = height - block + 1
            if depth >= min_confirmations:
                escrow = copy.copy(version)
                escrow.confirmations = depth
                return escrow
        raise NotFound(f"{self.chain}: escrow {to_hex(escrow_id)} not found "
                       f"at depth {min_confirmations}")

    def register_resolver(self, escrow_id: bytes, resolver: str) -> TxReceipt:
        return self._run(self._register_resolver, escrow_id, resolver)

    def _register_resolver(self, escrow_id: bytes, resolver: str) -> TxReceipt:
        escrow = self._latest(escrow_id)
        if self.clock.now() >= escrow.timelock_exclusive:
            raise ExclusiveWindowClosed(f"{self.chain}: exclusive window closed")
        if escrow.resolver is not None:
            raise AlreadyRegistered(f"{self.chain}: resolver already set to {escrow.resolver}")
        escrow.resolver = resolver
        log.info(f"{self.chain}: resolver {resolver} registered on {to_hex(escrow_id)[:16]}...")
        return self._commit(escrow)

    def withdraw(self, escrow_id: bytes, preimage: bytes, caller: str) -> TxReceipt:
        return self._run(self._withdraw, escrow_id, preimage, caller)

    def _withdraw(self, escrow_id: bytes, preimage: bytes, caller: str) -> TxReceipt:
        escrow = self._latest(escrow_id)
        if not self.commitment.verify(preimage, escrow.hashlock):
            raise InvalidPreimage(f"{self.chain}: invalid preimage")
        if escrow.withdrawn:
            raise AlreadyWithdrawn(f"{self.chain}: escrow already {escrow.status}")

        now = self.clock.now()
        if now >= escrow.timelock_recovery:
            raise Expired(f"{self.chain}: escrow expired at {escrow.timelock_recovery}")
        if now < escrow.timelock_exclusive:
            if escrow.resolver is None:
                raise ExclusivePeriodViolation(
                    f"{self.chain}: no resolver set, cannot withdraw during exclusive period"
                )
            if caller != escrow.resolver:
                raise ExclusivePeriodViolation(
                    f"{self.chain}: only resolver {escrow.resolver} during exclusive period"
                )

        payee = escrow.recipient or caller
        escrow.withdrawn = True
        self._transfer(payee, escrow.token, escrow.amount)
        log.info(f"{self.chain}: escrow {to_hex(escrow_id)[:16]}... withdrawn by {caller}, "
                 f"{escrow.amount} paid to {payee}")
        return self._commit(escrow)

    def refund(self, escrow_id: bytes, caller: str) -> TxReceipt:
        return self._run(self._refund, escrow_id, caller)

    def _refund(self, escrow_id: bytes, caller: str) -> TxReceipt:
        escrow = self._latest(escrow_id)
        if escrow.withdrawn:
            raise AlreadyWithdrawn(f"{self.chain}: escrow already {escrow.status}")
        if self.clock.now() < escrow.timelock_recovery:
            raise NotYetExpired(
                f"{self.chain}: refund opens at {escrow.timelock_recovery}"
            )
        escrow.withdrawn = True
        escrow.refunded = True
        self._transfer(escrow.sender, escrow.token, escrow.amount)
        log.info(f"{self.chain}: escrow {to_hex(escrow_id)[:16]}... refunded to {escrow.sender}")
        return self._commit(escrow)

    def confirmations(self, receipt: TxReceipt) -> int:
        with self._lock:
            block = self._tx_blocks.get(receipt.tx_hash)
            if block is None:
                return 0
            return self.height() - block + 1
