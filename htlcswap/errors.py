"""
Error taxonomy for htlcswap.

Four categories drive every decision the coordinator makes:

- ConfigurationError: fatal, raised before any ledger call.
- NetworkError: transient, retried with backoff until the enclosing deadline.
- ProtocolError: an expected outcome of the escrow rules. The state machine
  routes around it (idempotent completion, refund, or stuck).
- InvariantViolation: a structural mismatch between the two ledgers or a
  counterparty breaking the timelock rules. Halts the swap; never retried.
"""


class SwapError(Exception):
    """Base class for all htlcswap errors."""
    category = "error"
    retryable = False
    terminal = False
    hint = ""

    def __init__(self, message: str = "", hint: str = ""):
        super().__init__(message or self.__class__.__name__)
        if hint:
            self.hint = hint


class ConfigurationError(SwapError):
    category = "configuration"
    hint = "fix credentials or addresses in the configuration and retry"


class NetworkError(SwapError):
    category = "network"
    retryable = True
    hint = "ledger RPC unreachable; the call is retried until its deadline"


class DeadlineExceeded(SwapError):
    """A bounded wait ran past the escrow timelock that bounds it."""
    category = "deadline"
    hint = "escrow deadline passed; refund path will open at the recovery timelock"


class ChannelUnavailable(SwapError):
    """The preimage could not be delivered confidentially."""
    category = "channel"
    retryable = True
    hint = "resolver secret channel unavailable; secret was NOT published"


# =============================================================================
# Protocol errors
# =============================================================================

class ProtocolError(SwapError):
    category = "protocol"


class NotFound(ProtocolError):
    hint = "escrow does not exist on this ledger"


class AlreadyExists(ProtocolError):
    hint = "an escrow with this id already exists"


class InsufficientFunds(ProtocolError):
    hint = "sender balance is below the lock amount"


class InvalidTimelockOrdering(ProtocolError):
    hint = "timelock_exclusive must be before timelock_recovery and in the future"


class AlreadyRegistered(ProtocolError):
    hint = "another resolver already holds exclusivity on this escrow"


class ExclusiveWindowClosed(ProtocolError):
    hint = "resolver registration is only possible before timelock_exclusive"


class InvalidPreimage(ProtocolError):
    terminal = True
    hint = "preimage does not hash to the escrow hashlock"


class AlreadyWithdrawn(ProtocolError):
    terminal = True
    hint = "escrow already settled"


class ExclusivePeriodViolation(ProtocolError):
    terminal = True
    hint = "only the registered resolver may withdraw before timelock_exclusive"


class Expired(ProtocolError):
    terminal = True
    hint = "escrow expired, refund now eligible"


class NotYetExpired(ProtocolError):
    hint = "refund opens at timelock_recovery"


# =============================================================================
# Invariant violations
# =============================================================================

class InvariantViolation(SwapError):
    category = "invariant"
    terminal = True
    hint = "swap halted; operator must inspect both ledgers"


class HashMismatch(InvariantViolation):
    hint = ("ledgers disagree on the hash commitment; check that both escrow "
            "contracts use SHA-256 over raw secret bytes")


class TimelockViolation(InvariantViolation):
    hint = "counterparty escrow timelocks break the safety margin"


class OrderingViolated(TimelockViolation):
    hint = "escrow timelock_exclusive is not before timelock_recovery"


class WindowTooShort(TimelockViolation):
    hint = "escrow window leaves no room for finality and clock skew"


class EscrowMismatch(InvariantViolation):
    hint = "destination escrow does not match the source order terms"


# CLI exit codes per category
EXIT_CODES = {
    "configuration": 3,
    "network": 4,
    "deadline": 4,
    "protocol": 5,
    "invariant": 6,
    "channel": 7,
}


def exit_code_for(error: BaseException) -> int:
    """Process exit code for an error (1 for anything outside the taxonomy)."""
    if isinstance(error, SwapError):
        return EXIT_CODES.get(error.category, 1)
    return 1
