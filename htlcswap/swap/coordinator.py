"""
Swap coordinator.

Drives one source/destination ledger pair through the HTLC protocol:

    created -> resolver_registered -> source_finalized -> destination_locked
            -> secret_disclosed -> destination_withdrawn -> completed

with `refunding -> refunded` reachable from any non-terminal state once an
unsettled leg's recovery timelock passes. Every transition is guarded by
state read back from the ledgers at the configured confirmation depth;
nothing is acted on while still unconfirmed.

step() makes at most one guarded transition and never blocks for longer
than one retried ledger call. drive() repeats step() on a poll interval;
since every state either progresses or is overtaken by a recovery
timelock, drive() always terminates.
"""

import logging
from typing import Optional, Tuple

from ..commitment import HashCommitment
from ..config import CoordinatorConfig
from ..core import (
    Escrow, Leg, LockParams, SwapState, TERMINAL_STATES,
    derive_escrow_id, mask_secret, to_hex,
)
from ..errors import (
    SwapError, ConfigurationError, NetworkError, DeadlineExceeded, ChannelUnavailable,
    ProtocolError, NotFound, AlreadyExists, AlreadyRegistered, InvalidPreimage,
    AlreadyWithdrawn, NotYetExpired, InvariantViolation, HashMismatch, EscrowMismatch,
    WindowTooShort,
)
from ..htlc.base import EscrowLedger
from ..timelock import TimelockPolicy
from .registry import Swap, SwapRegistry
from .retry import Backoff, call_with_retry
from .secret_channel import SecretChannel

log = logging.getLogger(__name__)

# How long past recovery a refund keeps being retried
REFUND_GRACE_SECONDS = 24 * 3600


def derive_state(source: Optional[Escrow], destination: Optional[Escrow], now: int,
                 disclosed: bool = False, source_depth: int = 1,
                 dest_depth: int = 1) -> SwapState:
    """
    Rebuild a swap's lifecycle state from its two escrows alone.

    Args:
        source: source escrow, or None if it does not exist (yet)
        destination: destination escrow, or None if not created
        now: current time in unix seconds
        disclosed: whether the maker has handed the preimage to the resolver
        source_depth / dest_depth: confirmations required for finality

    Raises:
        NotFound: if there is no source escrow
    """
    if source is None:
        raise NotFound("swap has no source escrow")

    dest_settled = destination is None or destination.withdrawn
    if source.refunded or (destination is not None and destination.refunded):
        if source.withdrawn and dest_settled:
            return SwapState.REFUNDED
        return SwapState.REFUNDING

    if source.withdrawn:
        return SwapState.COMPLETED

    if destination is not None and destination.withdrawn:
        if destination.confirmations >= dest_depth:
            return SwapState.DESTINATION_WITHDRAWN
        return SwapState.SECRET_DISCLOSED

    if now >= source.timelock_recovery:
        return SwapState.REFUNDING
    if destination is not None and now >= destination.timelock_recovery:
        return SwapState.REFUNDING

    if destination is not None and destination.confirmations >= dest_depth:
        return SwapState.SECRET_DISCLOSED if disclosed else SwapState.DESTINATION_LOCKED

    if source.resolver:
        if source.confirmations >= source_depth:
            return SwapState.SOURCE_FINALIZED
        return SwapState.RESOLVER_REGISTERED
    return SwapState.CREATED


class Coordinator:
    """
    HTLC swap state machine over a source and a destination EscrowLedger.

    Both ledgers must share one HashCommitment; a pair that hashes secrets
    differently can never settle, so it is refused at construction.
    """

    def __init__(self, source: EscrowLedger, destination: EscrowLedger,
                 policy: TimelockPolicy, channel: SecretChannel,
                 registry: Optional[SwapRegistry] = None, sequencer=None,
                 config: Optional[CoordinatorConfig] = None):
        if source.commitment != destination.commitment:
            raise ConfigurationError(
                f"Ledgers disagree on the hash commitment: {source.commitment!r} "
                f"vs {destination.commitment!r}"
            )
        self.source = source
        self.destination = destination
        self.commitment: HashCommitment = source.commitment
        self.policy = policy
        self.channel = channel
        self.registry = registry or SwapRegistry()
        self.sequencer = sequencer
        self.config = config or CoordinatorConfig()
        self.backoff = Backoff(self.config.retry_initial, self.config.retry_max,
                               self.config.retry_multiplier)
        self.clock = source.clock

    # ------------------------------------------------------------------
    # Ledger call helpers
    # ------------------------------------------------------------------

    def _write(self, ledger: EscrowLedger, account: Optional[str], deadline: int,
               label: str, fn, *args):
        """Sequenced, retried ledger write."""
        def attempt():
            if self.sequencer is not None:
                return self.sequencer.call(ledger.chain, account, fn, *args)
            return fn(*args)
        return call_with_retry(attempt, deadline, clock=ledger.clock,
                               backoff=self.backoff, label=label)

    def _read(self, ledger: EscrowLedger, escrow_id: bytes, deadline: int,
              final: bool = True) -> Optional[Escrow]:
        """Escrow at the ledger's finality depth, or None if not there yet."""
        depth = ledger.required_confirmations if final else 0
        try:
            return call_with_retry(
                lambda: ledger.get_lock(escrow_id, min_confirmations=depth),
                deadline, clock=ledger.clock, backoff=self.backoff,
                label=f"{ledger.chain} get_lock",
            )
        except NotFound:
            return None

    def _ledger(self, leg: Leg) -> EscrowLedger:
        return self.source if leg == Leg.SOURCE else self.destination

    # ------------------------------------------------------------------
    # Swap setup
    # ------------------------------------------------------------------

    def create_swap(self, swap_id: str, maker: str, maker_dest: str, token: str,
                    amount: int, dest_token: str, min_return: int,
                    secret: Optional[bytes] = None, hashlock: Optional[bytes] = None,
                    dest_amount: Optional[int] = None,
                    exclusive_seconds: Optional[int] = None,
                    recovery_seconds: Optional[int] = None) -> Swap:
        """
        Lock the maker's funds on the source ledger and start tracking the swap.

        Either `secret` (raw bytes, kept for later disclosure) or `hashlock`
        must be given.

        Raises:
            ConfigurationError, InsufficientFunds, InvalidTimelockOrdering,
            AlreadyExists, DeadlineExceeded
        """
        if secret is not None:
            hashlock = self.commitment.commit(secret)
        elif hashlock is None:
            raise ConfigurationError("create_swap needs a secret or a hashlock")
        if amount <= 0:
            raise ConfigurationError(f"amount must be positive, got {amount}")
        if self.registry.get(swap_id) is not None:
            raise AlreadyExists(f"Swap {swap_id} already exists")

        maker = self.source.normalize_account(maker)
        maker_dest = self.destination.normalize_account(maker_dest)
        timelock_exclusive, timelock_recovery = self.policy.derive(
            self.source.now(), exclusive_seconds, recovery_seconds
        )
        params = LockParams(
            escrow_id=derive_escrow_id(swap_id, Leg.SOURCE),
            sender=maker,
            recipient=None,
            token=token,
            amount=amount,
            hashlock=hashlock,
            timelock_exclusive=timelock_exclusive,
            timelock_recovery=timelock_recovery,
            dest_chain=self.destination.chain,
            dest_user=maker_dest,
            output_token=dest_token,
            min_return=min_return,
        )

        log.info(f"Swap {swap_id}: locking {amount} {token} on {self.source.chain}, "
                 f"hashlock={to_hex(hashlock)[:16]}...")
        self._create_lock(self.source, maker, params, timelock_exclusive)

        swap = Swap(
            swap_id=swap_id,
            state=SwapState.CREATED,
            maker=maker,
            maker_dest=maker_dest,
            hashlock=hashlock,
            source_chain=self.source.chain,
            dest_chain=self.destination.chain,
            source_escrow_id=params.escrow_id,
            dest_escrow_id=derive_escrow_id(swap_id, Leg.DESTINATION),
            token=token,
            amount=amount,
            dest_token=dest_token,
            min_return=min_return,
            dest_amount=dest_amount,
            source_exclusive=timelock_exclusive,
            source_recovery=timelock_recovery,
            secret=secret,
        )
        return self.registry.add(swap)

    def _create_lock(self, ledger: EscrowLedger, account: str, params: LockParams,
                     deadline: int) -> Escrow:
        """create_lock, treating our own earlier lock (lost response) as success."""
        try:
            return self._write(ledger, account, deadline, f"{ledger.chain} create_lock",
                               ledger.create_lock, params)
        except AlreadyExists:
            existing = ledger.get_lock(params.escrow_id)
            if existing.hashlock != params.hashlock or existing.sender != params.sender:
                raise
            log.info(f"{ledger.chain}: escrow {to_hex(params.escrow_id)[:16]}... already "
                     f"created by this swap")
            return existing

    def register_resolver(self, swap_id: str, resolver: str,
                          resolver_dest: Optional[str] = None) -> Swap:
        """
        Claim exclusivity on the source escrow for `resolver`.

        `resolver_dest` is the same resolver's account on the destination
        chain (defaults to `resolver`).

        Raises:
            AlreadyRegistered, ExclusiveWindowClosed, NotFound
        """
        swap = self.registry.require(swap_id)
        resolver = self.source.normalize_account(resolver)
        resolver_dest = self.destination.normalize_account(resolver_dest or resolver)

        def attempt():
            return self.registry.register(swap_id, resolver, self.source, self.sequencer)

        try:
            call_with_retry(attempt, swap.source_exclusive, clock=self.source.clock,
                            backoff=self.backoff, label="register_resolver")
        except AlreadyRegistered:
            # A retried registration may already have landed for us
            escrow = self.source.get_lock(swap.source_escrow_id)
            if escrow.resolver != resolver:
                raise
            self.registry.update(swap_id, resolver=resolver)
            self.registry.transition(swap_id, SwapState.RESOLVER_REGISTERED)

        return self.registry.update(swap_id, resolver_dest=resolver_dest)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def step(self, swap_id: str) -> SwapState:
        """Attempt one guarded transition. Returns the resulting state."""
        swap = self.registry.require(swap_id)
        if swap.state in TERMINAL_STATES:
            return swap.state

        if swap.state != SwapState.REFUNDING and self._expired(swap):
            self.registry.transition(swap_id, SwapState.REFUNDING)
            swap = self.registry.require(swap_id)

        handler = {
            SwapState.CREATED: self._await_resolver,
            SwapState.RESOLVER_REGISTERED: self._await_source_finality,
            SwapState.SOURCE_FINALIZED: self._lock_destination,
            SwapState.DESTINATION_LOCKED: self._disclose,
            SwapState.SECRET_DISCLOSED: self._withdraw_destination,
            SwapState.DESTINATION_WITHDRAWN: self._withdraw_source,
            SwapState.REFUNDING: self._refund,
            SwapState.STUCK: self._await_refund,
        }[swap.state]

        try:
            handler(swap)
        except InvariantViolation as e:
            self.registry.transition(swap_id, SwapState.HALTED, error=e)
        except ChannelUnavailable as e:
            # Stay put; never fall back to a public reveal
            log.warning(f"Swap {swap_id}: {e}")
            self._record(swap_id, e)
        except NetworkError as e:
            log.warning(f"Swap {swap_id}: {e}")
            self._record(swap_id, e)
        except (ProtocolError, DeadlineExceeded) as e:
            self._route_failure(swap_id, e)

        return self.registry.require(swap_id).state

    def drive(self, swap_id: str, stop_event=None, max_steps: Optional[int] = None) -> SwapState:
        """Step a swap until it reaches a terminal state (or is stopped)."""
        steps = 0
        state = self.registry.require(swap_id).state
        while state not in TERMINAL_STATES:
            if stop_event is not None and stop_event.is_set():
                break
            if max_steps is not None and steps >= max_steps:
                break
            new_state = self.step(swap_id)
            steps += 1
            if new_state == state:
                self.clock.sleep(self.config.poll_interval)
            state = new_state
        return state

    def status(self, swap_id: str):
        return self.registry.status(swap_id)

    def refund(self, swap_id: str, stop_event=None) -> SwapState:
        """
        Operator-initiated refund of every unsettled leg.

        Also the way out of HALTED once the operator has looked at the
        invariant failure: funds locked by a halted swap go back to their
        senders after recovery.

        Raises:
            NotYetExpired: if no leg has reached its recovery timelock
        """
        swap = self.registry.require(swap_id)
        if swap.state in TERMINAL_STATES and swap.state != SwapState.HALTED:
            return swap.state
        if not self._refund_eligible(swap):
            raise NotYetExpired(
                f"Swap {swap_id}: source refund opens at {swap.source_recovery}"
            )
        if swap.state != SwapState.REFUNDING:
            self.registry.transition(swap_id, SwapState.REFUNDING)
        return self.drive(swap_id, stop_event=stop_event)

    def accept_secret(self, swap_id: str, preimage: bytes) -> Swap:
        """
        Resolver side: take a preimage the maker handed over out of band.

        Raises:
            InvalidPreimage: if it does not open the swap's hashlock
        """
        swap = self.registry.require(swap_id)
        if not self.commitment.verify(preimage, swap.hashlock):
            raise InvalidPreimage(f"Secret {mask_secret(preimage)} does not match swap {swap_id}")
        self.channel.deliver(swap_id, preimage, swap.resolver_dest)
        if swap.state == SwapState.DESTINATION_LOCKED:
            self.registry.update(swap_id, disclosed=True)
            self.registry.transition(swap_id, SwapState.SECRET_DISCLOSED)
        return self.registry.require(swap_id)

    # ------------------------------------------------------------------
    # Failure routing
    # ------------------------------------------------------------------

    def _record(self, swap_id: str, error: SwapError):
        self.registry.update(swap_id, error=str(error), error_category=error.category,
                             hint=error.hint or None)

    def _refund_eligible(self, swap: Swap) -> bool:
        if self.source.now() >= swap.source_recovery:
            return True
        return (swap.dest_recovery is not None
                and self.destination.now() >= swap.dest_recovery)

    def _expired(self, swap: Swap) -> bool:
        """An unsettled leg has passed its recovery timelock."""
        if not swap.source_withdrawn and self.source.now() >= swap.source_recovery:
            return True
        return (swap.dest_recovery is not None
                and not swap.dest_withdrawn
                and self.destination.now() >= swap.dest_recovery)

    def _route_failure(self, swap_id: str, error: SwapError):
        swap = self.registry.require(swap_id)
        if self._refund_eligible(swap):
            self.registry.transition(swap_id, SwapState.REFUNDING, error=error)
        else:
            self.registry.transition(swap_id, SwapState.STUCK, error=error)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _await_resolver(self, swap: Swap):
        # Registration is an external action; source recovery bounds the wait
        escrow = self._read(self.source, swap.source_escrow_id, swap.source_recovery, final=False)
        if escrow is not None and escrow.resolver and swap.resolver is None:
            log.info(f"Swap {swap.swap_id}: resolver {escrow.resolver} registered on chain")
            self.registry.update(swap.swap_id, resolver=escrow.resolver,
                                 resolver_dest=swap.resolver_dest or escrow.resolver)
            self.registry.transition(swap.swap_id, SwapState.RESOLVER_REGISTERED)

    def _await_source_finality(self, swap: Swap):
        escrow = self._read(self.source, swap.source_escrow_id, swap.source_recovery)
        if escrow is None or escrow.resolver is None:
            return
        if escrow.hashlock != swap.hashlock:
            raise HashMismatch(
                f"Source escrow hashlock {to_hex(escrow.hashlock)} != swap "
                f"{to_hex(swap.hashlock)}"
            )
        if escrow.resolver != swap.resolver:
            raise EscrowMismatch(
                f"Source escrow resolver {escrow.resolver} != registered {swap.resolver}"
            )
        self.policy.validate(escrow)
        log.info(f"Swap {swap.swap_id}: source lock final at depth {escrow.confirmations}")
        self.registry.transition(swap.swap_id, SwapState.SOURCE_FINALIZED)

    def _lock_destination(self, swap: Swap):
        source_escrow = self._read(self.source, swap.source_escrow_id, swap.source_recovery)
        if source_escrow is None:
            raise NotFound(f"Source escrow for swap {swap.swap_id} disappeared")

        deadline = source_escrow.timelock_exclusive
        if swap.dest_recovery is None:
            try:
                timelock_exclusive, timelock_recovery = self.policy.derive_destination(
                    source_escrow, self.destination.now()
                )
            except WindowTooShort as e:
                # Too late to lock safely; nothing exists on the destination yet
                self._route_failure(swap.swap_id, e)
                return
            # Stored before the lock exists; refunds read the leg from these
            swap = self.registry.update(swap.swap_id, dest_exclusive=timelock_exclusive,
                                        dest_recovery=timelock_recovery,
                                        dest_amount=swap.dest_amount or swap.min_return)

        pending = self._read(self.destination, swap.dest_escrow_id, deadline, final=False)
        if pending is None:
            params = LockParams(
                escrow_id=swap.dest_escrow_id,
                sender=swap.resolver_dest,
                recipient=swap.maker_dest,
                token=swap.dest_token,
                amount=swap.dest_amount,
                hashlock=swap.hashlock,
                timelock_exclusive=swap.dest_exclusive,
                timelock_recovery=swap.dest_recovery,
            )
            log.info(f"Swap {swap.swap_id}: resolver locking {params.amount} "
                     f"{params.token} on {self.destination.chain}")
            pending = self._create_lock(self.destination, swap.resolver_dest, params, deadline)
        if (pending.timelock_exclusive, pending.timelock_recovery) != (
                swap.dest_exclusive, swap.dest_recovery):
            swap = self.registry.update(swap.swap_id,
                                        dest_exclusive=pending.timelock_exclusive,
                                        dest_recovery=pending.timelock_recovery)
        if pending.resolver is None:
            self._register_destination_resolver(swap)

        dest_escrow = self._read(self.destination, swap.dest_escrow_id, deadline)
        if dest_escrow is None or dest_escrow.resolver is None:
            return

        self.verify_destination(source_escrow, dest_escrow)
        self.registry.update(swap.swap_id, dest_exclusive=dest_escrow.timelock_exclusive,
                             dest_recovery=dest_escrow.timelock_recovery)
        self.registry.transition(swap.swap_id, SwapState.DESTINATION_LOCKED)

    def _register_destination_resolver(self, swap: Swap):
        swap = self.registry.require(swap.swap_id)
        try:
            self._write(self.destination, swap.resolver_dest, swap.dest_exclusive,
                        f"{self.destination.chain} register_resolver",
                        self.destination.register_resolver, swap.dest_escrow_id,
                        swap.resolver_dest)
        except AlreadyRegistered:
            escrow = self.destination.get_lock(swap.dest_escrow_id)
            if escrow.resolver != swap.resolver_dest:
                raise EscrowMismatch(
                    f"Destination escrow resolver {escrow.resolver} is not {swap.resolver_dest}"
                )

    def verify_destination(self, source: Escrow, destination: Escrow):
        """
        Check the destination escrow against the source order terms.

        Raises:
            HashMismatch, EscrowMismatch, OrderingViolated, WindowTooShort
        """
        if destination.hashlock != source.hashlock:
            raise HashMismatch(
                f"Destination hashlock {to_hex(destination.hashlock)} != source "
                f"{to_hex(source.hashlock)}"
            )
        if destination.amount < source.min_return:
            raise EscrowMismatch(
                f"Destination amount {destination.amount} < min_return {source.min_return}"
            )
        expected_user = self.destination.normalize_account(source.dest_user)
        if expected_user and destination.recipient != expected_user:
            raise EscrowMismatch(
                f"Destination recipient {destination.recipient} != {expected_user}"
            )
        if source.output_token:
            expected_token = self.destination.normalize_account(source.output_token)
            if self.destination.normalize_account(destination.token) != expected_token:
                raise EscrowMismatch(
                    f"Destination token {destination.token} != {source.output_token}"
                )
        self.policy.validate_pair(source, destination, now=self.destination.now())

    def _disclose(self, swap: Swap):
        if swap.secret is None:
            # Resolver side: wait for the maker's delivery to land in our inbox
            preimage = self.channel.receive(swap.swap_id, swap.resolver_dest, timeout=0)
            if preimage is None:
                return
            if not self.commitment.verify(preimage, swap.hashlock):
                log.warning(f"Swap {swap.swap_id}: ignoring delivered secret "
                            f"{mask_secret(preimage)} (does not match hashlock)")
                return
            log.info(f"Swap {swap.swap_id}: secret received from maker")
            self.registry.update(swap.swap_id, disclosed=True)
            self.registry.transition(swap.swap_id, SwapState.SECRET_DISCLOSED)
            return
        if not self.commitment.verify(swap.secret, swap.hashlock):
            raise HashMismatch(f"Stored secret for swap {swap.swap_id} does not match hashlock")

        self.channel.disclose(swap.swap_id, swap.secret, swap.resolver_dest)
        self.registry.update(swap.swap_id, disclosed=True, error=None,
                             error_category=None, hint=None)
        self.registry.transition(swap.swap_id, SwapState.SECRET_DISCLOSED)

    def _withdraw(self, swap: Swap, leg: Leg, preimage: bytes, caller: str,
                  deadline: int) -> bool:
        """
        Withdraw one leg. Returns True once the withdrawal is final.

        Raises:
            HashMismatch: if the ledger rejects a preimage that verifies locally
        """
        ledger = self._ledger(leg)
        escrow_id = swap.escrow_id(leg)
        submitted_flag = "source_withdrawn" if leg == Leg.SOURCE else "dest_withdrawn"

        if not getattr(swap, submitted_flag):
            try:
                self._write(ledger, caller, deadline, f"{ledger.chain} withdraw",
                            ledger.withdraw, escrow_id, preimage, caller)
            except InvalidPreimage as e:
                if self.commitment.verify(preimage, swap.hashlock):
                    raise HashMismatch(
                        f"{ledger.chain} rejected a preimage that matches the hashlock; "
                        f"the ledgers disagree on the hash function ({e})"
                    )
                raise
            except AlreadyWithdrawn:
                escrow = ledger.get_lock(escrow_id)
                if escrow.refunded:
                    raise
                log.info(f"Swap {swap.swap_id}: {leg.value} leg already withdrawn")
            self.registry.update(swap.swap_id, **{submitted_flag: True})
            if leg == Leg.DESTINATION:
                self.channel.mark_public(swap.swap_id)

        return self._settled_on_chain(swap, leg)

    def _settled_on_chain(self, swap: Swap, leg: Leg) -> bool:
        """The leg was withdrawn (not refunded) at finality depth."""
        escrow = self._read(self._ledger(leg), swap.escrow_id(leg), swap.source_recovery)
        return escrow is not None and escrow.withdrawn and not escrow.refunded

    def _withdraw_destination(self, swap: Swap):
        # Another process holding the resolver key may have done it already
        if not swap.dest_withdrawn and self._settled_on_chain(swap, Leg.DESTINATION):
            self.registry.update(swap.swap_id, dest_withdrawn=True)
            self.channel.mark_public(swap.swap_id)
            self.registry.transition(swap.swap_id, SwapState.DESTINATION_WITHDRAWN)
            return

        preimage = self.channel.receive(swap.swap_id, swap.resolver_dest, timeout=0)
        if preimage is None:
            return
        if not self.commitment.verify(preimage, swap.hashlock):
            raise InvalidPreimage(f"Disclosed secret {mask_secret(preimage)} does not match hashlock")

        if self._withdraw(swap, Leg.DESTINATION, preimage, swap.resolver_dest, swap.dest_recovery):
            log.info(f"Swap {swap.swap_id}: maker paid on {self.destination.chain}")
            self.registry.transition(swap.swap_id, SwapState.DESTINATION_WITHDRAWN)

    def _withdraw_source(self, swap: Swap):
        if not swap.source_withdrawn and self._settled_on_chain(swap, Leg.SOURCE):
            self.registry.update(swap.swap_id, source_withdrawn=True)
            self.registry.transition(swap.swap_id, SwapState.COMPLETED)
            return

        preimage = self.channel.receive(swap.swap_id, swap.resolver_dest, timeout=0)
        if preimage is None:
            preimage = swap.secret
        if preimage is None:
            return
        if self._withdraw(swap, Leg.SOURCE, preimage, swap.resolver, swap.source_recovery):
            log.info(f"Swap {swap.swap_id}: resolver paid on {self.source.chain}")
            self.registry.transition(swap.swap_id, SwapState.COMPLETED)

    def _await_refund(self, swap: Swap):
        if self._refund_eligible(swap):
            self.registry.transition(swap.swap_id, SwapState.REFUNDING)

    def _legs(self, swap: Swap) -> Tuple[Tuple[Leg, str, int], ...]:
        return (
            (Leg.SOURCE, swap.maker, swap.source_recovery),
            (Leg.DESTINATION, swap.resolver_dest, swap.dest_recovery or swap.source_recovery),
        )

    def _refund(self, swap: Swap):
        settled = {}
        for leg, sender, recovery in self._legs(swap):
            ledger = self._ledger(leg)
            escrow_id = swap.escrow_id(leg)
            escrow = self._read(ledger, escrow_id, recovery + REFUND_GRACE_SECONDS, final=False)
            if escrow is None:
                # Never created; nothing to return
                settled[leg] = None
                continue
            if escrow.withdrawn:
                final = self._read(ledger, escrow_id, recovery + REFUND_GRACE_SECONDS)
                settled[leg] = final if final is not None and final.withdrawn else False
                continue
            if ledger.now() < escrow.timelock_recovery:
                settled[leg] = False
                continue

            caller = ledger.signer or sender or escrow.sender
            try:
                self._write(ledger, caller, escrow.timelock_recovery + REFUND_GRACE_SECONDS,
                            f"{ledger.chain} refund", ledger.refund, escrow_id, caller)
                log.info(f"Swap {swap.swap_id}: {leg.value} leg refunded to {sender}")
            except AlreadyWithdrawn:
                pass
            settled[leg] = False

        if any(value is False for value in settled.values()):
            return

        source_escrow = settled.get(Leg.SOURCE)
        dest_escrow = settled.get(Leg.DESTINATION)
        self.registry.update(
            swap.swap_id,
            source_refunded=bool(source_escrow and source_escrow.refunded),
            dest_refunded=bool(dest_escrow and dest_escrow.refunded),
        )
        if (source_escrow and not source_escrow.refunded
                and dest_escrow and not dest_escrow.refunded):
            self.registry.transition(swap.swap_id, SwapState.COMPLETED)
        else:
            self.registry.transition(swap.swap_id, SwapState.REFUNDED)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def reconcile(self, swap_id: str) -> SwapState:
        """
        Re-derive a swap's state from both ledgers (used after a restart).

        The stored state is kept when the ledgers cannot tell the difference
        (e.g. whether the secret was already disclosed).
        """
        swap = self.registry.require(swap_id)
        if swap.state in TERMINAL_STATES:
            return swap.state

        source = self._read(self.source, swap.source_escrow_id, swap.source_recovery, final=False)
        destination = None
        if swap.dest_recovery is not None:
            destination = self._read(self.destination, swap.dest_escrow_id,
                                     swap.dest_recovery, final=False)

        derived = derive_state(
            source, destination, self.source.now(), disclosed=swap.disclosed,
            source_depth=self.source.required_confirmations,
            dest_depth=self.destination.required_confirmations,
        )
        if derived != swap.state and swap.state not in (SwapState.STUCK, SwapState.HALTED):
            log.info(f"Swap {swap_id}: reconciled {swap.state.value} -> {derived.value}")
            fields = {}
            if source is not None and source.resolver and not swap.resolver:
                fields["resolver"] = source.resolver
            if destination is not None and destination.withdrawn and not destination.refunded:
                fields["dest_withdrawn"] = True
            if fields:
                self.registry.update(swap_id, **fields)
            self.registry.transition(swap_id, derived)
        return self.registry.require(swap_id).state
