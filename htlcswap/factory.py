"""
Wiring from SwapSettings to ledgers and a coordinator.

The CLI and the server build everything through here, so the objects they
get are constructed from explicit config only.
"""

import logging
from typing import Optional

from .commitment import HashCommitment
from .config import SwapSettings
from .core import Leg, MIN_CONFIRMATIONS, BLOCK_TIME_SECONDS
from .errors import ConfigurationError
from .htlc.base import EscrowLedger
from .htlc.evm import EVMEscrowLedger
from .htlc.memory import InMemoryEscrowLedger, SimulatedClock
from .htlc.near import NearEscrowLedger
from .swap.coordinator import Coordinator
from .swap.registry import SwapRegistry
from .swap.secret_channel import HttpSecretChannel, SecretChannel, parse_endpoints
from .swap.sequencer import AccountSequencer

log = logging.getLogger(__name__)


def build_ledger(chain: str, settings: SwapSettings, commitment: HashCommitment,
                 leg: Leg = Leg.SOURCE, clock: Optional[SimulatedClock] = None,
                 near_signer=None) -> EscrowLedger:
    """
    Construct the escrow ledger for `chain`.

    Memory ledgers are named per leg ("memory-source", "memory-destination")
    so a simulated pair keeps separate sequencer queues.
    """
    if chain == "near":
        return NearEscrowLedger(settings.near, commitment, signer=near_signer)
    if chain == "evm":
        return EVMEscrowLedger(settings.evm, commitment)
    if chain == "memory":
        return InMemoryEscrowLedger(
            commitment,
            clock=clock,
            chain=f"memory-{leg.value}",
            confirmations=MIN_CONFIRMATIONS["memory"],
            block_time=BLOCK_TIME_SECONDS["memory"],
        )
    raise ConfigurationError(f"Unsupported chain: {chain!r}")


def build_coordinator(settings: SwapSettings, channel: Optional[SecretChannel] = None,
                      near_signer=None, clock: Optional[SimulatedClock] = None,
                      registry: Optional[SwapRegistry] = None) -> Coordinator:
    """
    Build a coordinator for settings.source_chain -> settings.dest_chain.

    Without an explicit channel, secrets go out through HttpSecretChannel
    to the endpoints in settings.secret_endpoints.

    Raises:
        ConfigurationError: if the settings do not validate
    """
    settings.validate()
    commitment = HashCommitment(settings.hash_algorithm)

    if clock is None and "memory" in (settings.source_chain, settings.dest_chain):
        clock = SimulatedClock()

    source = build_ledger(settings.source_chain, settings, commitment, Leg.SOURCE,
                          clock=clock, near_signer=near_signer)
    destination = build_ledger(settings.dest_chain, settings, commitment, Leg.DESTINATION,
                               clock=clock, near_signer=near_signer)

    if channel is None:
        channel = HttpSecretChannel(parse_endpoints(settings.secret_endpoints))

    log.info(f"Coordinator: {source.chain} -> {destination.chain}, "
             f"hash={settings.hash_algorithm}")
    return Coordinator(
        source,
        destination,
        settings.policy(),
        channel,
        registry=registry or SwapRegistry(settings.registry_path),
        sequencer=AccountSequencer(),
        config=settings.coordinator,
    )
