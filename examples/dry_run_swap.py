#!/usr/bin/env python3
"""
Example: NEAR -> EVM swap, dry run

Runs the full swap flow on in-process ledgers that share a simulated
clock, with a background watcher driving the swap:

1. Maker locks tokens on the source ledger
2. Resolver registers for exclusivity
3. Resolver locks on the destination (inside the coordinator's safety window)
4. Maker discloses the secret to the resolver only
5. Destination withdrawal pays the maker, revealing the secret
6. Resolver withdraws the source leg

Usage:
    python examples/dry_run_swap.py
"""

import sys
import logging
from pathlib import Path

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from htlcswap.config import SwapSettings
from htlcswap.core import to_hex
from htlcswap.factory import build_coordinator
from htlcswap.swap.secret_channel import InMemorySecretChannel
from htlcswap.swap.watcher import SwapWatcher, WatcherConfig

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)


def main():
    # =================================================================
    # 1. Build coordinator on memory ledgers
    # =================================================================
    settings = SwapSettings(source_chain="memory", dest_chain="memory")
    channel = InMemorySecretChannel()
    coordinator = build_coordinator(settings, channel=channel)
    source, destination = coordinator.source, coordinator.destination

    source.deposit("alice.near", "wrap.near", 10**24)
    destination.deposit("0xResolver", "USDC", 5_000_000)

    # =================================================================
    # 2. Maker locks
    # =================================================================
    swap = coordinator.create_swap(
        "dry-run-1",
        maker="alice.near",
        maker_dest="0xAlice",
        token="wrap.near",
        amount=10**24,
        dest_token="USDC",
        min_return=4_950_000,
        dest_amount=5_000_000,
    )
    log.info(f"Swap {swap.swap_id} created, hashlock {to_hex(swap.hashlock)[:16]}...")
    log.info(f"Source windows: exclusive until {swap.source_exclusive}, "
             f"recovery from {swap.source_recovery}")

    # =================================================================
    # 3. Resolver registers
    # =================================================================
    coordinator.register_resolver(swap.swap_id, "bob.near", resolver_dest="0xResolver")

    # =================================================================
    # 4. Drive to completion
    # =================================================================
    watcher = SwapWatcher(coordinator, WatcherConfig(poll_interval=1))
    watcher.on_state_change = lambda s, old, new: log.info(
        f"  {s.swap_id}: {old.value} -> {new.value}"
    )
    swap = watcher.watch_single_swap(swap.swap_id, timeout=60)

    # =================================================================
    # 5. Results
    # =================================================================
    print()
    print("=" * 60)
    print(f"Swap {swap.swap_id}: {swap.state.value}")
    print("=" * 60)
    print(f"  Maker received:    {destination.balance('0xAlice', 'USDC')} USDC")
    print(f"  Resolver received: {source.balance('bob.near', 'wrap.near')} wrap.near")
    print(f"  Secret public:     {channel.is_public(swap.swap_id)}")
    return 0 if swap.state.value == "completed" else 1


if __name__ == "__main__":
    sys.exit(main())
