"""
GiftPacks — Claim routes
  POST /claim                 claim by gift code or on-chain gift id
  POST /claim/code/{code}     claim by gift code
  GET  /claim/status/code/{code}  latest claim task by gift code
  GET  /claim/status/{ref}    latest claim task (digits = on-chain id, else code)
  POST /claim/confirm         record a wallet-executed claim
"""
import re

from fastapi import APIRouter, Depends, HTTPException, Request

from auth import verify_client_secret
from config import CLAIM_RATE_LIMIT
from database import get_db
from errors import unwrap
from limiter import limiter
from models import ClaimRequest, ClaimSubmission, ClaimTaskOut, ConfirmClaim, GiftPackOut
from reconciler import Reference

_GIFT_ID = re.compile(r"[0-9]+")

router = APIRouter(prefix="/claim", tags=["Claim"], dependencies=[Depends(verify_client_secret)])


def _reference(data: ClaimRequest) -> Reference:
    if data.gift_code:
        return data.gift_code
    if data.gift_id is not None:
        return data.gift_id
    raise HTTPException(status_code=400, detail="Provide either gift_code or gift_id.")


def _parse_ref(ref: str) -> Reference:
    ref = ref.strip()
    return int(ref) if _GIFT_ID.fullmatch(ref) else ref


@router.post("", response_model=ClaimSubmission, summary="Claim a gift")
@limiter.limit(CLAIM_RATE_LIMIT)
async def claim(request: Request, data: ClaimRequest):
    """
    Resolve a LOCKED pack and prepare its claim.

    - **mode = relay**: submitted to the gasless relay; poll `/claim/status/{ref}`.
    - **mode = unsigned**: `transaction` holds the call for the claimer's wallet;
      report the mined hash to `/claim/confirm`.

    Returns **404** when the gift is unknown or no longer claimable, **503** when
    claiming is disabled, **423** when the escrow is paused.
    """
    reference = _reference(data)
    db = await get_db()
    try:
        return unwrap(await request.app.state.claims.build_claim(db, reference, data.claimer))
    finally:
        await db.close()


@router.post("/code/{code}", response_model=ClaimSubmission, summary="Claim a gift by code")
@limiter.limit(CLAIM_RATE_LIMIT)
async def claim_by_code(request: Request, code: str):
    db = await get_db()
    try:
        return unwrap(await request.app.state.claims.build_claim(db, code))
    finally:
        await db.close()


@router.get("/status/code/{code}", response_model=ClaimTaskOut, summary="Claim status by code")
@limiter.limit(CLAIM_RATE_LIMIT)
async def claim_status_by_code(request: Request, code: str):
    """Latest claim task for a gift code, including codes made only of digits."""
    db = await get_db()
    try:
        return unwrap(await request.app.state.claims.status(db, code))
    finally:
        await db.close()


@router.get("/status/{ref}", response_model=ClaimTaskOut, summary="Claim status")
@limiter.limit(CLAIM_RATE_LIMIT)
async def claim_status(request: Request, ref: str):
    db = await get_db()
    try:
        return unwrap(await request.app.state.claims.status(db, _parse_ref(ref)))
    finally:
        await db.close()


@router.post("/confirm", response_model=GiftPackOut, summary="Confirm a claim")
@limiter.limit(CLAIM_RATE_LIMIT)
async def confirm_claim(request: Request, data: ConfirmClaim):
    """
    Mark a LOCKED pack CLAIMED after the claimer's own transaction succeeded.
    A second confirm for the same pack returns **400** and changes nothing.
    """
    reference = _reference(data)
    db = await get_db()
    try:
        return unwrap(await request.app.state.claims.confirm(db, reference, data.tx_hash, data.claimer))
    finally:
        await db.close()
