"""
Swap coordination for htlcswap.

Drives HTLC swaps across two escrow ledgers.
"""

from .coordinator import Coordinator, derive_state
from .registry import Swap, SwapRegistry, SwapStatus
from .retry import Backoff, call_with_retry
from .secret_channel import (
    SecretChannel, InMemorySecretChannel, HttpSecretChannel, parse_endpoints,
)
from .sequencer import AccountSequencer
from .watcher import SwapWatcher, WatcherConfig

__all__ = [
    "Coordinator",
    "derive_state",
    "Swap",
    "SwapRegistry",
    "SwapStatus",
    "Backoff",
    "call_with_retry",
    "SecretChannel",
    "InMemorySecretChannel",
    "HttpSecretChannel",
    "parse_endpoints",
    "AccountSequencer",
    "SwapWatcher",
    "WatcherConfig",
]
