"""
GiftPacks — Draft store
Pre-lock pack metadata and item composition. Mutations are only allowed while
a pack is DRAFT and, when a sender identity is supplied, only by its sender.
"""
import logging
import re
from typing import Any, Dict, List, Optional

import aiosqlite
from web3 import Web3

from database import (
    fetch_pack,
    item_row_to_dict,
    new_id,
    now_utc,
    pack_row_to_dict,
    to_utc_iso,
    transition_status,
)
from errors import ErrorKind, Result
from ledger import NATIVE_TOKEN
from models import AddItem, AssetType, CreateGiftPack, PackStatus, UpdateGiftPack

logger = logging.getLogger(__name__)

_UINT = re.compile(r"[0-9]+")


def validate_item(asset_type: str, contract: str, token_id: Optional[str], amount: Optional[str]) -> List[str]:
    """Shape checks shared by addItem and lock validation."""
    errors = []
    contract = (contract or "").strip()
    if contract.lower() == NATIVE_TOKEN:
        if asset_type != AssetType.FUNGIBLE.value:
            errors.append("Native token items must be of type FUNGIBLE")
    elif not Web3.is_address(contract):
        errors.append(f"Invalid contract address: {contract or '<empty>'}")

    if asset_type == AssetType.FUNGIBLE.value:
        if not amount or not _UINT.fullmatch(amount) or int(amount) <= 0:
            errors.append("Fungible items must have a positive integer amount")
    elif asset_type == AssetType.NON_FUNGIBLE.value:
        if not token_id or not _UINT.fullmatch(token_id):
            errors.append("Non-fungible items must have a numeric token ID")
    else:
        errors.append(f"Unknown asset type: {asset_type}")
    return errors


def _not_found() -> Result:
    return Result.fail(ErrorKind.NOT_FOUND, "GiftPack not found")


def _check_mutable(pack: Dict[str, Any], sender: Optional[str]) -> Optional[Result]:
    if sender and sender.lower() != pack["sender_address"].lower():
        return Result.fail(ErrorKind.FORBIDDEN, "Only the sender may modify this gift pack")
    if pack["status"] != PackStatus.DRAFT.value:
        return Result.fail(
            ErrorKind.STATE,
            f"Gift pack is {pack['status']}; only DRAFT packs can be modified",
        )
    return None


def _is_code_conflict(exc: aiosqlite.IntegrityError) -> bool:
    return "gift_code" in str(exc)


# ── Create / read ─────────────────────────────────────────────────────────────

async def create(db: aiosqlite.Connection, data: CreateGiftPack) -> Result[Dict[str, Any]]:
    pack_id, ts = new_id(), now_utc()
    try:
        await db.execute(
            "INSERT INTO gift_packs (id, sender_address, message, expiry, status, gift_code, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (pack_id, data.sender_address, data.message, to_utc_iso(data.expiry),
             PackStatus.DRAFT.value, data.gift_code, ts, ts),
        )
        await db.commit()
    except aiosqlite.IntegrityError as exc:
        await db.rollback()
        if _is_code_conflict(exc):
            return Result.fail(ErrorKind.CONFLICT, "A gift with this giftCode already exists.")
        raise

    logger.info("Created draft gift pack %s for %s", pack_id, data.sender_address)
    return await get(db, pack_id)


async def get(db: aiosqlite.Connection, pack_id: str) -> Result[Dict[str, Any]]:
    pack = await fetch_pack(db, "id = ?", (pack_id,))
    return Result.success(pack) if pack else _not_found()


async def find_by_code(db: aiosqlite.Connection, code: str) -> Result[Dict[str, Any]]:
    code = (code or "").strip()
    if not code:
        return Result.fail(ErrorKind.VALIDATION, "giftCode is required")
    pack = await fetch_pack(db, "gift_code = ?", (code,))
    if not pack:
        return Result.fail(ErrorKind.NOT_FOUND, "GiftPack not found for this gift code")
    return Result.success(pack)


async def find_by_on_chain_id(db: aiosqlite.Connection, gift_id: int) -> Result[Dict[str, Any]]:
    pack = await fetch_pack(
        db,
        "gift_id_on_chain = ? OR EXISTS (SELECT 1 FROM json_each(gift_packs.gift_ids_on_chain) WHERE value = ?)",
        (gift_id, gift_id),
    )
    if not pack:
        return Result.fail(ErrorKind.NOT_FOUND, "GiftPack not found for this on-chain gift ID")
    return Result.success(pack)


async def list_by_sender(db: aiosqlite.Connection, address: str) -> List[Dict[str, Any]]:
    async with db.execute(
        "SELECT * FROM gift_packs WHERE lower(sender_address) = lower(?) ORDER BY created_at DESC",
        (address,),
    ) as cursor:
        rows = await cursor.fetchall()
    packs = []
    for row in rows:
        async with db.execute(
            "SELECT * FROM gift_items WHERE gift_pack_id = ? ORDER BY created_at ASC, rowid ASC", (row["id"],)
        ) as cursor:
            packs.append(pack_row_to_dict(row, await cursor.fetchall()))
    return packs


# ── Mutations (DRAFT only) ────────────────────────────────────────────────────

async def update(
    db: aiosqlite.Connection, pack_id: str, data: UpdateGiftPack, sender: Optional[str] = None
) -> Result[Dict[str, Any]]:
    current = await get(db, pack_id)
    if not current.ok:
        return current
    denied = _check_mutable(current.value, sender)
    if denied:
        return denied

    fields = data.model_dump(exclude_unset=True)
    if "expiry" in fields:
        if fields["expiry"] is None:
            return Result.fail(ErrorKind.VALIDATION, "expiry cannot be null")
        fields["expiry"] = to_utc_iso(fields["expiry"])
    if not fields:
        return current

    try:
        changed = await transition_status(
            db, pack_id, PackStatus.DRAFT.value, PackStatus.DRAFT.value, **fields
        )
        await db.commit()
    except aiosqlite.IntegrityError as exc:
        await db.rollback()
        if _is_code_conflict(exc):
            return Result.fail(ErrorKind.CONFLICT, "A gift with this giftCode already exists.")
        raise
    if not changed:
        return Result.fail(ErrorKind.STATE, "Gift pack left DRAFT status; update rejected")
    return await get(db, pack_id)


async def delete(db: aiosqlite.Connection, pack_id: str, sender: Optional[str] = None) -> Result[None]:
    current = await get(db, pack_id)
    if not current.ok:
        return current
    denied = _check_mutable(current.value, sender)
    if denied:
        return denied

    cursor = await db.execute(
        "DELETE FROM gift_packs WHERE id = ? AND status = ?", (pack_id, PackStatus.DRAFT.value)
    )
    await db.commit()
    if cursor.rowcount == 0:
        return Result.fail(ErrorKind.STATE, "Gift pack left DRAFT status; delete rejected")
    logger.info("Deleted draft gift pack %s", pack_id)
    return Result.success(None)


async def add_item(
    db: aiosqlite.Connection, pack_id: str, item: AddItem, sender: Optional[str] = None
) -> Result[Dict[str, Any]]:
    current = await get(db, pack_id)
    if not current.ok:
        return current
    denied = _check_mutable(current.value, sender)
    if denied:
        return denied

    errors = validate_item(item.type.value, item.contract, item.token_id, item.amount)
    if errors:
        return Result.fail(ErrorKind.VALIDATION, "Gift item is malformed", errors)

    contract = item.contract.strip()
    if contract.lower() == NATIVE_TOKEN:
        contract = NATIVE_TOKEN
    fungible = item.type == AssetType.FUNGIBLE
    item_id = new_id()

    # Insert only while the parent is still DRAFT
    cursor = await db.execute(
        "INSERT INTO gift_items (id, gift_pack_id, type, contract, token_id, amount, created_at) "
        "SELECT ?, ?, ?, ?, ?, ?, ? WHERE EXISTS "
        "(SELECT 1 FROM gift_packs WHERE id = ? AND status = ?)",
        (item_id, pack_id, item.type.value, contract,
         None if fungible else item.token_id,
         item.amount if fungible else None,
         now_utc(), pack_id, PackStatus.DRAFT.value),
    )
    await db.commit()
    if cursor.rowcount == 0:
        return Result.fail(ErrorKind.STATE, "Gift pack left DRAFT status; item rejected")

    async with db.execute("SELECT * FROM gift_items WHERE id = ?", (item_id,)) as cur:
        row = await cur.fetchone()
    return Result.success(item_row_to_dict(row))


async def remove_item(
    db: aiosqlite.Connection, pack_id: str, item_id: str, sender: Optional[str] = None
) -> Result[None]:
    current = await get(db, pack_id)
    if not current.ok:
        return current
    denied = _check_mutable(current.value, sender)
    if denied:
        return denied

    cursor = await db.execute(
        "DELETE FROM gift_items WHERE id = ? AND gift_pack_id = ? AND EXISTS "
        "(SELECT 1 FROM gift_packs WHERE id = ? AND status = ?)",
        (item_id, pack_id, pack_id, PackStatus.DRAFT.value),
    )
    await db.commit()
    if cursor.rowcount == 0:
        return Result.fail(ErrorKind.NOT_FOUND, "Gift item not found")
    return Result.success(None)


# ── Out-of-band transitions ───────────────────────────────────────────────────

async def mark_refunded(db: aiosqlite.Connection, pack_id: str) -> Result[Dict[str, Any]]:
    """Applied by the external expiry/refund process once the ledger has refunded the pack."""
    current = await get(db, pack_id)
    if not current.ok:
        return current
    changed = await transition_status(db, pack_id, PackStatus.LOCKED.value, PackStatus.REFUNDED.value)
    await db.commit()
    if not changed:
        return Result.fail(ErrorKind.STATE, f"Only LOCKED packs can be refunded (status {current.value['status']})")
    logger.info("Gift pack %s marked REFUNDED", pack_id)
    return await get(db, pack_id)
