"""
Chain RPC clients for htlcswap.

- EVM: web3.py with local nonce sequencing
- NEAR: JSON-RPC over httpx, signing delegated to a NearSigner
"""

from .evm import EVMClient, NonceTracker
from .near import NearClient, NearSigner, NearRPCError

__all__ = [
    "EVMClient",
    "NonceTracker",
    "NearClient",
    "NearSigner",
    "NearRPCError",
]
