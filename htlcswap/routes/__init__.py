"""HTTP routes for htlcswap."""

from .status import router

__all__ = ["router"]
