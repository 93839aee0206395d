"""
Swap registry.

Tracks in-flight swaps and their last known state. The only cross-process
exclusion in the protocol, one resolver per escrow, is delegated to the
ledger's atomic register_resolver; the local lock only protects this
process's bookkeeping.
"""

import os
import json
import time
import logging
import threading
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from ..core import Leg, SwapState, TERMINAL_STATES, to_hex, to_bytes32
from ..errors import AlreadyExists, AlreadyRegistered, NotFound

log = logging.getLogger(__name__)


@dataclass
class Swap:
    """One swap as seen by this coordinator."""
    swap_id: str
    state: SwapState
    maker: str                          # Source-chain sender
    maker_dest: str                     # Maker's account on the destination chain
    hashlock: bytes

    source_chain: str
    dest_chain: str
    source_escrow_id: bytes
    dest_escrow_id: bytes

    token: str
    amount: int
    dest_token: str
    min_return: int

    source_exclusive: int
    source_recovery: int
    dest_exclusive: Optional[int] = None
    dest_recovery: Optional[int] = None

    resolver: Optional[str] = None          # Source-chain identity
    resolver_dest: Optional[str] = None     # Same resolver on the destination chain
    dest_amount: Optional[int] = None

    secret: Optional[bytes] = field(default=None, repr=False)
    disclosed: bool = False
    source_withdrawn: bool = False
    dest_withdrawn: bool = False
    source_refunded: bool = False
    dest_refunded: bool = False

    error: Optional[str] = None
    error_category: Optional[str] = None
    hint: Optional[str] = None

    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def escrow_id(self, leg: Leg) -> bytes:
        return self.source_escrow_id if leg == Leg.SOURCE else self.dest_escrow_id

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        for key in ("hashlock", "source_escrow_id", "dest_escrow_id"):
            data[key] = to_hex(data[key])
        if include_secret and self.secret is not None:
            data["secret"] = self.secret.hex()
        else:
            data.pop("secret")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Swap":
        data = dict(data)
        data["state"] = SwapState(data["state"])
        for key in ("hashlock", "source_escrow_id", "dest_escrow_id"):
            data[key] = to_bytes32(data[key], key)
        if data.get("secret"):
            data["secret"] = bytes.fromhex(data["secret"])
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class SwapStatus:
    """Status query result."""
    swap_id: str
    state: str
    category: Optional[str] = None
    error: Optional[str] = None
    hint: Optional[str] = None
    resolver: Optional[str] = None
    source_escrow_id: str = ""
    dest_escrow_id: str = ""
    source_exclusive: Optional[int] = None
    source_recovery: Optional[int] = None
    dest_exclusive: Optional[int] = None
    dest_recovery: Optional[int] = None
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SwapRegistry:
    """Thread-safe store of swaps, optionally persisted to a JSON file."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._swaps: Dict[str, Swap] = {}
        self._lock = threading.RLock()

        if path and os.path.exists(path):
            self.load(path)

    def __len__(self):
        with self._lock:
            return len(self._swaps)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def add(self, swap: Swap) -> Swap:
        with self._lock:
            if swap.swap_id in self._swaps:
                raise AlreadyExists(f"Swap {swap.swap_id} already registered")
            self._swaps[swap.swap_id] = swap
            self._persist()
        log.info(f"Swap {swap.swap_id}: tracked ({swap.state.value})")
        return swap

    def get(self, swap_id: str) -> Optional[Swap]:
        with self._lock:
            return self._swaps.get(swap_id)

    def require(self, swap_id: str) -> Swap:
        swap = self.get(swap_id)
        if swap is None:
            raise NotFound(f"Unknown swap {swap_id}")
        return swap

    def list(self) -> List[Swap]:
        with self._lock:
            return list(self._swaps.values())

    def list_active(self) -> List[Swap]:
        with self._lock:
            return [s for s in self._swaps.values() if not s.terminal]

    def update(self, swap_id: str, **fields) -> Swap:
        with self._lock:
            swap = self.require(swap_id)
            for name, value in fields.items():
                if not hasattr(swap, name):
                    raise AttributeError(f"Swap has no field {name!r}")
                setattr(swap, name, value)
            swap.updated_at = time.time()
            self._persist()
            return swap

    def transition(self, swap_id: str, state: SwapState,
                   error: Optional[BaseException] = None) -> Swap:
        """Move a swap to `state`, recording the error that caused it, if any."""
        with self._lock:
            swap = self.require(swap_id)
            old = swap.state
            swap.state = state
            if error is not None:
                swap.error = str(error)
                swap.error_category = getattr(error, "category", "error")
                swap.hint = getattr(error, "hint", "") or None
            elif state not in (SwapState.STUCK, SwapState.HALTED):
                swap.error = swap.error_category = swap.hint = None
            swap.updated_at = time.time()
            self._persist()

        if old != state:
            if state == SwapState.HALTED:
                log.error(f"Swap {swap_id}: {old.value} -> {state.value} ({swap.error})")
            elif state in (SwapState.STUCK, SwapState.REFUNDING):
                log.warning(f"Swap {swap_id}: {old.value} -> {state.value}"
                            + (f" ({swap.error})" if error else ""))
            else:
                log.info(f"Swap {swap_id}: {old.value} -> {state.value}")
        return swap

    # ------------------------------------------------------------------
    # Resolver registration
    # ------------------------------------------------------------------

    def register(self, swap_id: str, resolver: str, ledger, sequencer=None) -> Swap:
        """
        Register `resolver` as the swap's exclusive resolver.

        The ledger call decides the winner; concurrent resolvers in other
        processes lose with AlreadyRegistered.

        Raises:
            AlreadyRegistered, ExclusiveWindowClosed, NotFound
        """
        swap = self.require(swap_id)
        if swap.resolver and swap.resolver != resolver:
            raise AlreadyRegistered(f"Swap {swap_id} already has resolver {swap.resolver}")

        if sequencer is not None:
            sequencer.call(ledger.chain, resolver, ledger.register_resolver,
                           swap.source_escrow_id, resolver)
        else:
            ledger.register_resolver(swap.source_escrow_id, resolver)

        self.update(swap_id, resolver=resolver)
        return self.transition(swap_id, SwapState.RESOLVER_REGISTERED)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, swap_id: str) -> SwapStatus:
        swap = self.require(swap_id)
        category, hint = swap.error_category, swap.hint
        if swap.state == SwapState.REFUNDING and not hint:
            hint = "escrow expired, refund now eligible"
        return SwapStatus(
            swap_id=swap.swap_id,
            state=swap.state.value,
            category=category,
            error=swap.error,
            hint=hint,
            resolver=swap.resolver,
            source_escrow_id=to_hex(swap.source_escrow_id),
            dest_escrow_id=to_hex(swap.dest_escrow_id),
            source_exclusive=swap.source_exclusive,
            source_recovery=swap.source_recovery,
            dest_exclusive=swap.dest_exclusive,
            dest_recovery=swap.dest_recovery,
            updated_at=swap.updated_at,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self):
        if self.path:
            self.save(self.path)

    def save(self, path: str):
        """Write all swaps as JSON. The file holds secrets and is created 0600."""
        with self._lock:
            data = {
                "version": 1,
                "swaps": [s.to_dict(include_secret=True) for s in self._swaps.values()],
            }
        tmp = f"{path}.tmp"
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)

    def load(self, path: str) -> int:
        """Load swaps from JSON, replacing records with the same id."""
        with open(path) as f:
            data = json.load(f)
        loaded = 0
        with self._lock:
            for item in data.get("swaps", []):
                try:
                    swap = Swap.from_dict(item)
                except (KeyError, ValueError, TypeError) as e:
                    log.warning(f"Skipping unreadable swap record: {e}")
                    continue
                self._swaps[swap.swap_id] = swap
                loaded += 1
        log.info(f"Loaded {loaded} swaps from {path}")
        return loaded
