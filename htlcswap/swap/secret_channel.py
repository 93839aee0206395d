"""
Private preimage delivery.

The preimage goes to the registered resolver only. It becomes public when
the resolver's destination withdrawal lands on chain; until then nothing
in this package broadcasts it. If confidential delivery fails the caller
gets ChannelUnavailable and must not fall back to anything public.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Mapping, Optional, Set, Tuple, Union

import httpx

from ..core import mask_secret
from ..errors import ChannelUnavailable, ConfigurationError

log = logging.getLogger(__name__)


class SecretChannel(ABC):
    """Delivers a swap's preimage to its resolver."""

    @abstractmethod
    def disclose(self, swap_id: str, preimage: bytes, to: str):
        """
        Deliver the preimage to resolver `to`.

        Raises:
            ChannelUnavailable: if it could not be delivered confidentially
        """

    @abstractmethod
    def deliver(self, swap_id: str, preimage: bytes, to: str):
        """Accept a preimage addressed to resolver `to` on this side of the channel."""

    @abstractmethod
    def receive(self, swap_id: str, resolver: str, timeout: Optional[float] = None) -> Optional[bytes]:
        """Preimage delivered to `resolver` for a swap, or None on timeout."""

    def mark_public(self, swap_id: str):
        """Record that the preimage has been revealed on chain."""


class InMemorySecretChannel(SecretChannel):
    """
    In-process mailbox keyed by (swap_id, resolver).

    Also serves as the resolver-side inbox behind the HTTP secret route.
    """

    def __init__(self):
        self._mail: Dict[Tuple[str, str], bytes] = {}
        self._public: Set[str] = set()
        self._cond = threading.Condition()
        self.available = True

    def deliver(self, swap_id: str, preimage: bytes, to: str):
        with self._cond:
            self._mail[(swap_id, to)] = bytes(preimage)
            self._cond.notify_all()

    def disclose(self, swap_id: str, preimage: bytes, to: str):
        if not self.available:
            raise ChannelUnavailable(f"Secret channel down, swap {swap_id} not disclosed")
        if not to:
            raise ChannelUnavailable(f"No resolver to disclose swap {swap_id} to")
        self.deliver(swap_id, preimage, to)
        log.info(f"Swap {swap_id}: secret {mask_secret(preimage)} disclosed to {to}")

    def receive(self, swap_id: str, resolver: str, timeout: Optional[float] = None) -> Optional[bytes]:
        key = (swap_id, resolver)
        with self._cond:
            self._cond.wait_for(lambda: key in self._mail, timeout=timeout)
            return self._mail.get(key)

    def mark_public(self, swap_id: str):
        with self._cond:
            self._public.add(swap_id)

    def is_public(self, swap_id: str) -> bool:
        with self._cond:
            return swap_id in self._public


class HttpSecretChannel(SecretChannel):
    """
    Posts the preimage to the resolver's secret inbox (POST /api/secret).

    Endpoints must be https. Plain http is refused because anyone on the
    path could read the preimage and front-run the resolver.
    """

    def __init__(self, endpoints: Union[Mapping[str, str], Callable[[str], Optional[str]]],
                 http: Optional[httpx.Client] = None, inbox: Optional[InMemorySecretChannel] = None,
                 timeout: float = 15.0):
        self._endpoints = endpoints
        self.http = http or httpx.Client(timeout=timeout)
        self.inbox = inbox or InMemorySecretChannel()

    def endpoint_for(self, resolver: str) -> Optional[str]:
        if callable(self._endpoints):
            return self._endpoints(resolver)
        return self._endpoints.get(resolver)

    def disclose(self, swap_id: str, preimage: bytes, to: str):
        url = self.endpoint_for(to)
        if not url:
            raise ChannelUnavailable(f"No secret endpoint known for resolver {to}")
        if not url.lower().startswith("https://"):
            raise ChannelUnavailable(
                f"Refusing to send secret for swap {swap_id} over non-TLS endpoint {url}"
            )

        payload = {"swap_id": swap_id, "resolver": to, "preimage": bytes(preimage).hex()}
        try:
            response = self.http.post(url.rstrip("/") + "/api/secret", json=payload)
        except httpx.HTTPError as e:
            raise ChannelUnavailable(f"Secret delivery for swap {swap_id} failed: {e}")

        if response.status_code != 200:
            raise ChannelUnavailable(
                f"Resolver inbox rejected swap {swap_id}: HTTP {response.status_code}"
            )
        log.info(f"Swap {swap_id}: secret {mask_secret(preimage)} posted to {to}")

    def deliver(self, swap_id: str, preimage: bytes, to: str):
        self.inbox.deliver(swap_id, preimage, to)

    def receive(self, swap_id: str, resolver: str, timeout: Optional[float] = None) -> Optional[bytes]:
        return self.inbox.receive(swap_id, resolver, timeout=timeout)

    def mark_public(self, swap_id: str):
        self.inbox.mark_public(swap_id)


def parse_endpoints(text: str) -> Dict[str, str]:
    """Parse 'resolver=https://host,other=https://host2' into a mapping."""
    endpoints = {}
    for item in filter(None, (part.strip() for part in text.split(","))):
        if "=" not in item:
            raise ConfigurationError(f"Bad secret endpoint entry: {item!r}")
        resolver, url = item.split("=", 1)
        endpoints[resolver.strip()] = url.strip()
    return endpoints
