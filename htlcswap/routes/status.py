"""
Swap status and resolver secret inbox endpoints.

The app that mounts this router must set on `app.state`:
  registry    SwapRegistry with the swaps this process knows about
  inbox       InMemorySecretChannel that delivered secrets land in
  commitment  HashCommitment shared with both ledgers
"""

import time
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..core import SwapState, mask_secret

log = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class SwapStatusResponse(BaseModel):
    swap_id: str
    state: str
    category: Optional[str] = None     # Error category on stuck/halted swaps
    error: Optional[str] = None
    hint: Optional[str] = None         # Remediation for the operator
    resolver: Optional[str] = None
    source_escrow_id: str
    dest_escrow_id: str
    source_exclusive: Optional[int] = None
    source_recovery: Optional[int] = None
    dest_exclusive: Optional[int] = None
    dest_recovery: Optional[int] = None
    updated_at: float


class SwapListResponse(BaseModel):
    count: int
    swaps: List[SwapStatusResponse]


class SecretDelivery(BaseModel):
    swap_id: str = Field(..., min_length=1)
    resolver: str = Field(..., min_length=1)
    preimage: str = Field(..., description="hex-encoded secret")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/api/status")
async def get_status(request: Request):
    """Health check."""
    registry = request.app.state.registry
    swaps = registry.list()
    return {
        "status": "ok",
        "timestamp": int(time.time()),
        "hash": request.app.state.commitment.algorithm,
        "swaps_total": len(swaps),
        "swaps_active": len([s for s in swaps if not s.terminal]),
    }


@router.get("/api/swaps", response_model=SwapListResponse)
async def list_swaps(request: Request, state: Optional[str] = None,
                     limit: int = Query(50, ge=1, le=500)):
    """List swaps, newest first."""
    if state is not None:
        try:
            SwapState(state)
        except ValueError:
            raise HTTPException(400, f"Unknown state: {state}")

    registry = request.app.state.registry
    swaps = sorted(registry.list(), key=lambda s: s.updated_at, reverse=True)
    if state is not None:
        swaps = [s for s in swaps if s.state.value == state]
    items = [SwapStatusResponse(**registry.status(s.swap_id).to_dict()) for s in swaps[:limit]]
    return SwapListResponse(count=len(items), swaps=items)


@router.get("/api/swap/{swap_id}", response_model=SwapStatusResponse)
async def get_swap(swap_id: str, request: Request):
    """Get swap status."""
    registry = request.app.state.registry
    if registry.get(swap_id) is None:
        raise HTTPException(404, "Swap not found")
    return SwapStatusResponse(**registry.status(swap_id).to_dict())


@router.post("/api/secret")
async def receive_secret(delivery: SecretDelivery, request: Request):
    """
    Resolver inbox: accept a preimage disclosed by the maker.

    The secret is only accepted for a known swap, addressed to that swap's
    resolver, and only if it opens the swap's hashlock.
    """
    registry = request.app.state.registry
    swap = registry.get(delivery.swap_id)
    if swap is None:
        raise HTTPException(404, "Swap not found")
    if delivery.resolver not in (swap.resolver_dest, swap.resolver):
        raise HTTPException(403, "Secret is not addressed to this swap's resolver")

    try:
        preimage = bytes.fromhex(delivery.preimage.removeprefix("0x"))
    except ValueError:
        raise HTTPException(400, "preimage must be hex")

    if not request.app.state.commitment.verify(preimage, swap.hashlock):
        log.warning(f"Swap {swap.swap_id}: rejected secret {mask_secret(preimage)} "
                    f"(does not match hashlock)")
        raise HTTPException(400, "preimage does not match hashlock")

    request.app.state.inbox.deliver(swap.swap_id, preimage, swap.resolver_dest or delivery.resolver)
    log.info(f"Swap {swap.swap_id}: secret {mask_secret(preimage)} received")
    return {"status": "accepted", "swap_id": swap.swap_id}
