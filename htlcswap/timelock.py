"""
Timelock policy for a two-leg swap.

Each escrow's lifetime is split into three windows:

    [created, exclusive)   only the registered resolver may withdraw
    [exclusive, recovery)  anyone holding the preimage may withdraw
    [recovery, ...)        refund only

The destination leg is claimed first, so it must close first:

    T_dst_recovery + finality_margin + clock_skew <= T_src_exclusive

which leaves the resolver time to see its destination withdrawal finalize
and still withdraw the source leg inside its own exclusive window.
"""

import logging
from typing import Optional, Tuple

from .core import Escrow
from .errors import ConfigurationError, OrderingViolated, WindowTooShort

log = logging.getLogger(__name__)


def finality_margin(confirmations: int, block_time_seconds: int) -> int:
    """Seconds needed to reach a confirmation depth."""
    return max(0, confirmations) * max(1, block_time_seconds)


class TimelockPolicy:
    """Derives and validates escrow timelocks."""

    def __init__(self, exclusive_seconds: int, recovery_seconds: int,
                 clock_skew_seconds: int = 30,
                 finality_margin_seconds: int = 0,
                 min_window_seconds: Optional[int] = None):
        self._check_durations(exclusive_seconds, recovery_seconds)
        if clock_skew_seconds < 0 or finality_margin_seconds < 0:
            raise ConfigurationError("clock skew and finality margin must be >= 0")

        self.exclusive_seconds = exclusive_seconds
        self.recovery_seconds = recovery_seconds
        self.clock_skew_seconds = clock_skew_seconds
        self.finality_margin_seconds = finality_margin_seconds
        # A window shorter than one finality margin cannot be acted on safely
        self.min_window_seconds = (
            min_window_seconds if min_window_seconds is not None
            else max(1, finality_margin_seconds + clock_skew_seconds)
        )

    @staticmethod
    def _check_durations(exclusive: int, recovery: int):
        if exclusive <= 0 or recovery <= 0:
            raise ConfigurationError(
                f"Timelock durations must be positive: exclusive={exclusive}, recovery={recovery}"
            )
        if exclusive >= recovery:
            raise ConfigurationError(
                f"Exclusive window ({exclusive}s) must be shorter than recovery ({recovery}s)"
            )

    def derive(self, now: int, exclusive_duration: Optional[int] = None,
               recovery_duration: Optional[int] = None) -> Tuple[int, int]:
        """
        Absolute (timelock_exclusive, timelock_recovery) for a new escrow.

        Durations default to the configured source windows.
        """
        exclusive = self.exclusive_seconds if exclusive_duration is None else exclusive_duration
        recovery = self.recovery_seconds if recovery_duration is None else recovery_duration
        self._check_durations(exclusive, recovery)
        return now + exclusive, now + recovery

    def destination_deadline(self, source: Escrow) -> int:
        """Latest allowed destination timelock_recovery for a source escrow."""
        return (source.timelock_exclusive
                - self.finality_margin_seconds
                - self.clock_skew_seconds)

    def derive_destination(self, source: Escrow, now: int) -> Tuple[int, int]:
        """
        Timelocks for the destination escrow matching `source`.

        The destination recovery sits as late as the safety margin allows;
        its exclusive window is the first half of its lifetime.

        Raises:
            WindowTooShort: if too little of the source window remains
        """
        recovery = self.destination_deadline(source)
        lifetime = recovery - now
        if lifetime < 2 * self.min_window_seconds:
            raise WindowTooShort(
                f"Only {lifetime}s left for the destination leg "
                f"(need {2 * self.min_window_seconds}s)"
            )
        exclusive = now + lifetime // 2
        return exclusive, recovery

    def validate(self, escrow: Escrow, clock_skew_tolerance: Optional[int] = None,
                 now: Optional[int] = None):
        """
        Validate one escrow's timelocks.

        Raises:
            OrderingViolated: timelock_exclusive >= timelock_recovery
            WindowTooShort: less than the minimum window remains before recovery
        """
        skew = self.clock_skew_seconds if clock_skew_tolerance is None else clock_skew_tolerance

        if escrow.timelock_exclusive >= escrow.timelock_recovery:
            raise OrderingViolated(
                f"timelock_exclusive={escrow.timelock_exclusive} >= "
                f"timelock_recovery={escrow.timelock_recovery}"
            )

        if now is not None:
            remaining = escrow.timelock_recovery - now - skew
            if remaining < self.min_window_seconds:
                raise WindowTooShort(
                    f"Escrow recovers in {escrow.timelock_recovery - now}s "
                    f"(min {self.min_window_seconds}s + {skew}s skew)"
                )

    def validate_pair(self, source: Escrow, destination: Escrow,
                      now: Optional[int] = None):
        """
        Validate the destination escrow against the source escrow.

        Raises:
            OrderingViolated / WindowTooShort
        """
        self.validate(source)
        self.validate(destination, now=now)

        deadline = self.destination_deadline(source)
        if destination.timelock_recovery > deadline:
            raise WindowTooShort(
                f"Destination recovery {destination.timelock_recovery} is later than "
                f"{deadline} (source exclusive {source.timelock_exclusive} - "
                f"margin {self.finality_margin_seconds}s - skew {self.clock_skew_seconds}s)"
            )
