"""
GiftPacks — Gift pack routes
  POST   /giftpacks                          create draft
  GET    /giftpacks/user/{address}           list a sender's packs
  GET    /giftpacks/code/{code}              look up by gift code
  GET    /giftpacks/on-chain/{gift_id}       look up by on-chain gift id
  GET    /giftpacks/on-chain/{gift_id}/preview  pack + ledger status by on-chain id
  GET    /giftpacks/{id}                     read pack + items
  PATCH  /giftpacks/{id}                     update draft metadata
  DELETE /giftpacks/{id}                     delete draft
  POST   /giftpacks/{id}/items               add item
  DELETE /giftpacks/{id}/items/{item_id}     remove item
  GET    /giftpacks/{id}/validate            lock readiness report
  POST   /giftpacks/{id}/lock                generate (or resume) the lock plan
  PATCH  /giftpacks/{id}/on-chain            record the lock transaction
  GET    /giftpacks/{id}/chain-status        reconcile with the ledger
  POST   /giftpacks/{id}/refunded            out-of-band refund notice
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Request

import drafts
from auth import sender_identity, verify_client_secret, verify_webhook_secret
from database import get_db
from errors import unwrap
from models import (
    AddItem,
    ChainStatusOut,
    ConfirmLock,
    CreateGiftPack,
    GiftItemOut,
    GiftPackOut,
    LockPlan,
    PreviewOut,
    StatusResponse,
    UpdateGiftPack,
    ValidationReport,
)

router = APIRouter(prefix="/giftpacks", tags=["Gift packs"])
secured = [Depends(verify_client_secret)]


# ── Lookups (literal prefixes first) ──────────────────────────────────────────

@router.get("/user/{address}", response_model=List[GiftPackOut], summary="List packs by sender",
            dependencies=secured)
async def list_by_sender(address: str):
    """All packs created by a sender address (case-insensitive), newest first."""
    db = await get_db()
    try:
        return await drafts.list_by_sender(db, address)
    finally:
        await db.close()


@router.get("/code/{code}", response_model=GiftPackOut, summary="Find pack by gift code",
            dependencies=secured)
async def find_by_code(code: str):
    db = await get_db()
    try:
        return unwrap(await drafts.find_by_code(db, code))
    finally:
        await db.close()


@router.get("/on-chain/{gift_id}", response_model=GiftPackOut, summary="Find pack by on-chain gift id",
            dependencies=secured)
async def find_by_on_chain_id(gift_id: int):
    db = await get_db()
    try:
        return unwrap(await drafts.find_by_on_chain_id(db, gift_id))
    finally:
        await db.close()


@router.get("/on-chain/{gift_id}/preview", response_model=PreviewOut, summary="Preview an on-chain gift",
            dependencies=secured)
async def preview(request: Request, gift_id: int):
    """
    The off-chain pack linked to an on-chain gift id together with the ledger's
    view of it. The ledger status is advisory only.
    """
    db = await get_db()
    try:
        return unwrap(await request.app.state.reconciler.preview(db, gift_id))
    finally:
        await db.close()


# ── Drafts ────────────────────────────────────────────────────────────────────

@router.post("", response_model=GiftPackOut, status_code=201, summary="Create draft",
             dependencies=secured)
async def create_pack(data: CreateGiftPack):
    """
    Create a gift pack in DRAFT. `gift_code` is the claim secret; it must be
    unique across all packs (**409** otherwise) and is required before locking.
    """
    db = await get_db()
    try:
        return unwrap(await drafts.create(db, data))
    finally:
        await db.close()


@router.get("/{pack_id}", response_model=GiftPackOut, summary="Get pack", dependencies=secured)
async def get_pack(pack_id: str):
    db = await get_db()
    try:
        return unwrap(await drafts.get(db, pack_id))
    finally:
        await db.close()


@router.patch("/{pack_id}", response_model=GiftPackOut, summary="Update draft", dependencies=secured)
async def update_pack(pack_id: str, data: UpdateGiftPack, sender: Optional[str] = Depends(sender_identity)):
    db = await get_db()
    try:
        return unwrap(await drafts.update(db, pack_id, data, sender))
    finally:
        await db.close()


@router.delete("/{pack_id}", response_model=StatusResponse, summary="Delete draft", dependencies=secured)
async def delete_pack(pack_id: str, sender: Optional[str] = Depends(sender_identity)):
    db = await get_db()
    try:
        unwrap(await drafts.delete(db, pack_id, sender))
    finally:
        await db.close()
    return StatusResponse(status="ok", message="Gift pack deleted.")


@router.post("/{pack_id}/items", response_model=GiftItemOut, status_code=201, summary="Add item",
             dependencies=secured)
async def add_item(pack_id: str, item: AddItem, sender: Optional[str] = Depends(sender_identity)):
    """
    Add an asset to a DRAFT pack. Use `"contract": "native"` for the chain's
    native asset (FUNGIBLE only). Amounts and token ids are base-unit integer strings.
    """
    db = await get_db()
    try:
        return unwrap(await drafts.add_item(db, pack_id, item, sender))
    finally:
        await db.close()


@router.delete("/{pack_id}/items/{item_id}", response_model=StatusResponse, summary="Remove item",
               dependencies=secured)
async def remove_item(pack_id: str, item_id: str, sender: Optional[str] = Depends(sender_identity)):
    db = await get_db()
    try:
        unwrap(await drafts.remove_item(db, pack_id, item_id, sender))
    finally:
        await db.close()
    return StatusResponse(status="ok", message="Gift item removed.")


# ── Locking ───────────────────────────────────────────────────────────────────

@router.get("/{pack_id}/validate", response_model=ValidationReport, summary="Validate for locking",
            dependencies=secured)
async def validate_pack(request: Request, pack_id: str):
    db = await get_db()
    try:
        return unwrap(await request.app.state.orchestrator.validate(db, pack_id))
    finally:
        await db.close()


@router.post("/{pack_id}/lock", response_model=LockPlan, summary="Generate lock plan", dependencies=secured)
async def generate_lock_plan(request: Request, pack_id: str, sender: Optional[str] = Depends(sender_identity)):
    """
    Build the ordered ledger calls (create, one attach per item, lock) for the
    sender's wallet to execute. The pack moves to **LOCK_PENDING**.

    Calling again after a partial failure is safe: steps the ledger already
    reflects are listed under `skipped` and left out of `steps`.
    """
    db = await get_db()
    try:
        return unwrap(await request.app.state.orchestrator.generate_plan(db, pack_id, sender))
    finally:
        await db.close()


@router.patch("/{pack_id}/on-chain", response_model=GiftPackOut, summary="Confirm lock transaction",
              dependencies=secured)
async def confirm_lock(
    request: Request, pack_id: str, data: ConfirmLock, sender: Optional[str] = Depends(sender_identity)
):
    """Record the lock transaction. The pack becomes LOCKED once the ledger shows it locked."""
    db = await get_db()
    try:
        return unwrap(await request.app.state.orchestrator.confirm_lock(db, pack_id, data, sender))
    finally:
        await db.close()


@router.get("/{pack_id}/chain-status", response_model=ChainStatusOut, summary="Reconcile with ledger",
            dependencies=secured)
async def chain_status(request: Request, pack_id: str):
    db = await get_db()
    try:
        return unwrap(await request.app.state.reconciler.reconcile(db, pack_id))
    finally:
        await db.close()


@router.post("/{pack_id}/refunded", response_model=GiftPackOut, summary="Mark refunded",
             dependencies=[Depends(verify_webhook_secret)])
async def mark_refunded(pack_id: str):
    """Called by the expiry/refund process after the ledger has returned the assets."""
    db = await get_db()
    try:
        return unwrap(await drafts.mark_refunded(db, pack_id))
    finally:
        await db.close()
