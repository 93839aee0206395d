"""
Hash commitment rules shared by every escrow ledger.

hashlock = SHA256(secret) where secret is ALWAYS the raw bytes. Hashing the
hex text of a secret, or using keccak256 on one chain and SHA-256 on the
other, yields escrows that can never be withdrawn. Both ledgers of a swap
are constructed with the same HashCommitment instance so that cannot happen.
"""

import hmac
import hashlib
import secrets
from typing import Tuple

from web3 import Web3

from .core import BYTES32


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _keccak256(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


HASH_FUNCTIONS = {
    "sha256": _sha256,
    "keccak256": _keccak256,
}


class HashCommitment:
    """
    Canonical secret -> hashlock rule.

    Only raw bytes are accepted. A str is rejected instead of being encoded,
    because "which encoding?" is exactly the ambiguity this class removes.
    """

    def __init__(self, algorithm: str = "sha256"):
        if algorithm not in HASH_FUNCTIONS:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        self.algorithm = algorithm
        self._hash = HASH_FUNCTIONS[algorithm]

    def __eq__(self, other):
        if not isinstance(other, HashCommitment):
            return NotImplemented
        return self.algorithm == other.algorithm

    def __hash__(self):
        return hash(self.algorithm)

    def __repr__(self):
        return f"HashCommitment({self.algorithm!r})"

    @staticmethod
    def require_bytes(value, name: str) -> bytes:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value)
        raise TypeError(
            f"{name} must be raw bytes, got {type(value).__name__}; "
            f"decode hex/base64 text before calling"
        )

    def commit(self, secret: bytes) -> bytes:
        """Return the 32-byte hashlock for a raw secret."""
        return self._hash(self.require_bytes(secret, "secret"))

    def verify(self, preimage: bytes, hashlock: bytes) -> bool:
        """
        Check a disclosed preimage against a hashlock.

        Returns False on mismatch (including a malformed hashlock); the
        caller turns that into InvalidPreimage.
        """
        preimage = self.require_bytes(preimage, "preimage")
        hashlock = self.require_bytes(hashlock, "hashlock")
        if len(hashlock) != BYTES32:
            return False
        return hmac.compare_digest(self._hash(preimage), hashlock)

    def generate_secret(self) -> Tuple[bytes, bytes]:
        """
        Generate a random secret and its hashlock.

        Returns:
            (secret, hashlock) as raw bytes
        """
        secret = secrets.token_bytes(32)
        return secret, self.commit(secret)


DEFAULT_COMMITMENT = HashCommitment("sha256")


def generate_secret() -> Tuple[bytes, bytes]:
    """Random 32-byte secret and its SHA-256 hashlock."""
    return DEFAULT_COMMITMENT.generate_secret()


def verify_preimage(preimage: bytes, hashlock: bytes) -> bool:
    """SHA256(preimage) == hashlock, both raw bytes."""
    return DEFAULT_COMMITMENT.verify(preimage, hashlock)
