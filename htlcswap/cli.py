#!/usr/bin/env python3
"""
htlcswap operator CLI

Commands:
  create-lock        Lock the maker's funds on the source ledger
  register-resolver  Claim exclusivity on a swap's source escrow
  complete-swap      Drive a swap until it completes or is refunded
  status             Show a swap's state, error category and hint
  refund             Refund every expired leg of a swap
  simulate           Run a full swap against in-process ledgers

Ledgers and credentials come from the environment (SwapSettings.from_env);
swap records persist in --registry / HTLC_REGISTRY_PATH.

Exit codes: 0 ok, 1 unexpected, 3 configuration, 4 network/deadline,
5 protocol, 6 invariant violation, 7 secret channel unavailable.
"""

import sys
import json
import uuid
import logging
import argparse
from typing import Optional

from .config import SwapSettings
from .core import SwapState, to_bytes32
from .errors import EXIT_CODES, ConfigurationError, SwapError, exit_code_for
from .factory import build_coordinator
from .swap.coordinator import Coordinator
from .swap.secret_channel import InMemorySecretChannel

log = logging.getLogger(__name__)


# =============================================================================
# HELPERS
# =============================================================================

def _hex_bytes(value: str, name: str) -> bytes:
    text = value[2:] if value.startswith("0x") else value
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise ConfigurationError(f"{name} must be hex, got {value!r}")


def _settings(args) -> SwapSettings:
    settings = SwapSettings.from_env()
    if args.source_chain:
        settings.source_chain = args.source_chain
    if args.dest_chain:
        settings.dest_chain = args.dest_chain
    if args.registry:
        settings.registry_path = args.registry
    return settings


def _coordinator(args) -> Coordinator:
    settings = _settings(args)
    if not settings.registry_path:
        raise ConfigurationError("A registry file is required (--registry or HTLC_REGISTRY_PATH)")
    return build_coordinator(settings)


def _print(data):
    print(json.dumps(data, indent=2, default=str))


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_create_lock(args) -> int:
    coordinator = _coordinator(args)
    secret = hashlock = None
    if args.hashlock:
        hashlock = to_bytes32(_hex_bytes(args.hashlock, "--hashlock"), "hashlock")
    elif args.secret:
        secret = _hex_bytes(args.secret, "--secret")
    else:
        secret, _ = coordinator.commitment.generate_secret()

    swap = coordinator.create_swap(
        args.swap_id or uuid.uuid4().hex,
        maker=args.maker,
        maker_dest=args.maker_dest,
        token=args.token,
        amount=args.amount,
        dest_token=args.dest_token,
        min_return=args.min_return,
        secret=secret,
        hashlock=hashlock,
        dest_amount=args.dest_amount,
        exclusive_seconds=args.exclusive_seconds,
        recovery_seconds=args.recovery_seconds,
    )
    _print(swap.to_dict())
    return 0


def cmd_register_resolver(args) -> int:
    coordinator = _coordinator(args)
    swap = coordinator.register_resolver(args.swap_id, args.resolver, args.resolver_dest)
    _print(coordinator.status(swap.swap_id).to_dict())
    return 0


def cmd_complete_swap(args) -> int:
    coordinator = _coordinator(args)
    if args.secret:
        coordinator.accept_secret(args.swap_id, _hex_bytes(args.secret, "--secret"))
    state = coordinator.drive(args.swap_id, max_steps=args.max_steps)
    _print(coordinator.status(args.swap_id).to_dict())
    return _state_exit_code(coordinator, args.swap_id, state)


def cmd_status(args) -> int:
    coordinator = _coordinator(args)
    if args.reconcile:
        coordinator.reconcile(args.swap_id)
    _print(coordinator.status(args.swap_id).to_dict())
    return 0


def cmd_refund(args) -> int:
    coordinator = _coordinator(args)
    state = coordinator.refund(args.swap_id)
    _print(coordinator.status(args.swap_id).to_dict())
    return _state_exit_code(coordinator, args.swap_id, state)


def cmd_simulate(args) -> int:
    """Maker and resolver in one process, both ledgers in memory."""
    settings = SwapSettings(source_chain="memory", dest_chain="memory",
                            hash_algorithm=args.hash)
    channel = InMemorySecretChannel()
    coordinator = build_coordinator(settings, channel=channel)
    source, destination = coordinator.source, coordinator.destination

    maker, resolver = "maker", "resolver"
    source.deposit(maker, "SRC", args.amount)
    destination.deposit(resolver, "DST", args.amount)

    swap_id = args.swap_id or uuid.uuid4().hex
    coordinator.create_swap(swap_id, maker=maker, maker_dest=maker, token="SRC",
                            amount=args.amount, dest_token="DST", min_return=args.amount)
    if not args.no_resolver:
        coordinator.register_resolver(swap_id, resolver)
    if args.channel_down:
        channel.available = False

    state = coordinator.drive(swap_id)
    result = coordinator.status(swap_id).to_dict()
    result["balances"] = {
        f"{source.chain}:{maker}": source.balance(maker, "SRC"),
        f"{source.chain}:{resolver}": source.balance(resolver, "SRC"),
        f"{destination.chain}:{maker}": destination.balance(maker, "DST"),
        f"{destination.chain}:{resolver}": destination.balance(resolver, "DST"),
    }
    _print(result)
    return _state_exit_code(coordinator, swap_id, state)


def _state_exit_code(coordinator: Coordinator, swap_id: str, state: SwapState) -> int:
    """Non-zero when the swap ended halted or stuck."""
    if state not in (SwapState.HALTED, SwapState.STUCK):
        return 0
    swap = coordinator.registry.require(swap_id)
    return EXIT_CODES.get(swap.error_category or "", 1)


# =============================================================================
# MAIN
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="htlcswap",
        description="HTLC atomic swap coordinator"
    )
    parser.add_argument("--registry", type=str, help="Swap registry file (HTLC_REGISTRY_PATH)")
    parser.add_argument("--source-chain", choices=("near", "evm", "memory"))
    parser.add_argument("--dest-chain", choices=("near", "evm", "memory"))
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-lock", help="Lock maker funds on the source ledger")
    p.add_argument("--swap-id", type=str, help="Swap id (random if omitted)")
    p.add_argument("--maker", required=True, help="Maker account on the source chain")
    p.add_argument("--maker-dest", required=True, help="Maker account on the destination chain")
    p.add_argument("--token", required=True, help="Source token")
    p.add_argument("--amount", type=int, required=True, help="Source amount (base units)")
    p.add_argument("--dest-token", required=True, help="Destination token")
    p.add_argument("--min-return", type=int, required=True, help="Minimum destination amount")
    p.add_argument("--dest-amount", type=int, help="Destination amount (defaults to min-return)")
    p.add_argument("--secret", type=str, help="Secret as hex (random if omitted)")
    p.add_argument("--hashlock", type=str, help="Hashlock as hex, when the secret is held elsewhere")
    p.add_argument("--exclusive-seconds", type=int)
    p.add_argument("--recovery-seconds", type=int)
    p.set_defaults(func=cmd_create_lock)

    p = sub.add_parser("register-resolver", help="Claim exclusivity on a swap")
    p.add_argument("swap_id")
    p.add_argument("--resolver", required=True, help="Resolver account on the source chain")
    p.add_argument("--resolver-dest", help="Resolver account on the destination chain")
    p.set_defaults(func=cmd_register_resolver)

    p = sub.add_parser("complete-swap", help="Drive a swap to a terminal state")
    p.add_argument("swap_id")
    p.add_argument("--secret", type=str, help="Secret received from the maker, as hex")
    p.add_argument("--max-steps", type=int, help="Stop after this many steps")
    p.set_defaults(func=cmd_complete_swap)

    p = sub.add_parser("status", help="Show swap status")
    p.add_argument("swap_id")
    p.add_argument("--reconcile", action="store_true", help="Re-derive state from both ledgers")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("refund", help="Refund expired legs")
    p.add_argument("swap_id")
    p.set_defaults(func=cmd_refund)

    p = sub.add_parser("simulate", help="Run a swap on in-process ledgers")
    p.add_argument("--swap-id", type=str)
    p.add_argument("--amount", type=int, default=1_000_000)
    p.add_argument("--hash", choices=("sha256", "keccak256"), default="sha256")
    p.add_argument("--no-resolver", action="store_true", help="Nobody registers; ends in refund")
    p.add_argument("--channel-down", action="store_true", help="Secret channel unavailable")
    p.set_defaults(func=cmd_simulate)
    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    try:
        return args.func(args)
    except SwapError as e:
        log.error(f"{e.__class__.__name__}: {e}")
        if e.hint:
            log.error(f"Hint: {e.hint}")
        return exit_code_for(e)
    except Exception as e:
        log.exception(f"Unexpected error: {e}")
        return exit_code_for(e)


if __name__ == "__main__":
    sys.exit(main())
