"""
GiftPacks — Lock orchestration
Validates a draft and produces the ordered ledger calls (create -> attach* -> lock)
that the sender's own wallet executes. The service never signs or holds funds.

Plans are resumable: the ledger is queried by code hash before each plan is
built and steps it already reflects are skipped, so regenerating a plan after a
partial failure never re-issues a create the ledger would reject.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiosqlite
from web3 import Web3

import drafts
from database import parse_utc, transition_status
from errors import ErrorKind, Result
from config import NATIVE_TOKEN_POLICY, WRAPPED_NATIVE_ADDRESS
from ledger import (
    ASSET_TYPE_CODES,
    NATIVE_POLICIES,
    NATIVE_TOKEN,
    ZERO_ADDRESS,
    Disabled,
    LedgerConnection,
    check_active,
    code_hash,
    disabled_failure,
    wrapped_native,
)
from models import AssetType, ConfirmLock, LockPlan, PackStatus, PlanStep, ValidationReport
from reconciler import ChainStatusReconciler

logger = logging.getLogger(__name__)


def validate_pack(
    pack: Dict[str, Any],
    allowed: tuple = (PackStatus.DRAFT.value,),
    now: Optional[datetime] = None,
    native_policy: str = "allow",
    wrapped: Optional[str] = None,
) -> List[str]:
    now = now or datetime.now(timezone.utc)
    errors = []
    if pack["status"] not in allowed:
        errors.append("Gift pack must be in DRAFT status")
    items = pack.get("items") or []
    if not items:
        errors.append("Gift pack must contain at least one item")
    if parse_utc(pack["expiry"]) <= now:
        errors.append("Gift pack expiry must be in the future")
    for item in items:
        errors.extend(drafts.validate_item(item["type"], item["contract"], item["token_id"], item["amount"]))
        if item["contract"].lower() == NATIVE_TOKEN:
            if native_policy == "disallow":
                errors.append("Native token is not supported for smart contract gifts")
            elif native_policy == "wrap" and not wrapped:
                errors.append("WRAPPED_NATIVE_ADDRESS is not configured but native token was provided")
    return errors


class LockOrchestrator:
    def __init__(
        self,
        conn: LedgerConnection,
        reconciler: Optional[ChainStatusReconciler] = None,
        native_policy: str = NATIVE_TOKEN_POLICY,
        wrapped_native_address: str = WRAPPED_NATIVE_ADDRESS,
    ):
        self.conn = conn
        self.reconciler = reconciler or ChainStatusReconciler(conn)
        if native_policy not in NATIVE_POLICIES:
            logger.warning("Unknown NATIVE_TOKEN_POLICY %r; using 'allow'", native_policy)
            native_policy = "allow"
        self.native_policy = native_policy
        self.wrapped = wrapped_native(wrapped_native_address)

    def _errors(self, pack: Dict[str, Any], allowed: tuple = (PackStatus.DRAFT.value,)) -> List[str]:
        return validate_pack(pack, allowed, native_policy=self.native_policy, wrapped=self.wrapped)

    async def validate(self, db: aiosqlite.Connection, pack_id: str) -> Result[ValidationReport]:
        loaded = await drafts.get(db, pack_id)
        if not loaded.ok:
            return loaded
        errors = self._errors(loaded.value)
        return Result.success(ValidationReport(is_valid=not errors, errors=errors))

    async def generate_plan(
        self, db: aiosqlite.Connection, pack_id: str, sender: Optional[str] = None
    ) -> Result[LockPlan]:
        if isinstance(self.conn, Disabled):
            return Result.from_failure(disabled_failure(self.conn, "generatePlan"))
        ledger = self.conn.ledger

        loaded = await drafts.get(db, pack_id)
        if not loaded.ok:
            return loaded
        pack = loaded.value
        if sender and sender.lower() != pack["sender_address"].lower():
            return Result.fail(ErrorKind.FORBIDDEN, "Only the sender may lock this gift pack")

        resumable = (PackStatus.DRAFT.value, PackStatus.LOCK_PENDING.value)
        if pack["status"] not in resumable:
            return Result.fail(ErrorKind.STATE, f"Gift pack is {pack['status']}; only DRAFT packs can be locked")

        code = (pack["gift_code"] or "").strip()
        if not code:
            return Result.fail(
                ErrorKind.VALIDATION,
                "Gift code is required for locking in code-only mode. Create the draft with a unique gift_code.",
            )

        errors = self._errors(pack, allowed=resumable)
        if errors:
            return Result.fail(ErrorKind.VALIDATION, "Gift pack is not valid for locking", errors)

        inactive = await check_active(ledger)
        if inactive:
            return Result.from_failure(inactive)

        # ── What the ledger already holds for this code hash ────────────────
        ch = code_hash(code)
        exists, attached, locked = False, 0, False
        observed = await self.reconciler.fetch(ch)
        if observed.ok:
            on_chain = observed.value
            if on_chain.sender.lower() != pack["sender_address"].lower():
                return Result.fail(ErrorKind.CONFLICT, "This gift code is already in use on the ledger.")
            exists, attached, locked = True, on_chain.asset_count or 0, on_chain.locked
        elif observed.error.kind != ErrorKind.NOT_FOUND:
            return observed

        steps, skipped = self._build_steps(pack, ch, exists, attached, locked)

        if pack["status"] == PackStatus.DRAFT.value:
            moved = await transition_status(
                db, pack_id, PackStatus.DRAFT.value, PackStatus.LOCK_PENDING.value, code_hash=ch
            )
            if not moved:
                await db.rollback()
                return Result.fail(ErrorKind.STATE, "Gift pack left DRAFT status while planning")
        if locked:
            await transition_status(db, pack_id, PackStatus.LOCK_PENDING.value, PackStatus.LOCKED.value)
        await db.commit()

        status = PackStatus.LOCKED if locked else PackStatus.LOCK_PENDING
        logger.info(
            "Lock plan for %s: %d step(s), %d already on ledger, status %s",
            pack_id, len(steps), len(skipped), status.value,
        )
        return Result.success(LockPlan(
            gift_pack_id=pack_id, code_hash=ch, chain_id=self.conn.chain_id,
            status=status, steps=steps, skipped=skipped,
        ))

    def _build_steps(
        self, pack: Dict[str, Any], ch: str, exists: bool, attached: int, locked: bool
    ) -> tuple:
        ledger = self.conn.ledger
        ch_bytes = Web3.to_bytes(hexstr=ch)
        steps: List[PlanStep] = []
        skipped: List[str] = []

        def add(kind: str, data: str, value: int, description: str) -> None:
            steps.append(PlanStep(
                step=len(steps) + 1, kind=kind, target=ledger.address,
                data=data, value=str(value), description=description,
            ))

        if exists:
            skipped.append("create")
        else:
            expiry_ts = int(parse_utc(pack["expiry"]).timestamp())
            add("create", ledger.encode("createGiftPack", [expiry_ts, pack["message"] or "", ch_bytes]), 0,
                "Create gift pack on escrow")

        for index, item in enumerate(pack["items"]):
            if index < attached:
                skipped.append(f"attach:{item['id']}")
                continue
            is_native = item["contract"].lower() == NATIVE_TOKEN
            if is_native and self.native_policy == "wrap":
                # Sender wraps first; the escrow receives the wrapped token
                is_native, token = False, self.wrapped
            else:
                token = ZERO_ADDRESS if is_native else Web3.to_checksum_address(item["contract"])
            amount = int(item["amount"] or 0)
            token_id = int(item["token_id"] or 0)
            data = ledger.encode(
                "addAssetToGiftPack", [ch_bytes, ASSET_TYPE_CODES[item["type"]], token, token_id, amount]
            )
            if item["type"] == AssetType.NON_FUNGIBLE.value:
                description = f"Attach token #{token_id} of {token}"
            else:
                description = f"Attach {amount} of {'native asset' if is_native else token}"
            add("attach", data, amount if is_native else 0, description)

        if locked:
            skipped.append("lock")
        else:
            add("lock", ledger.encode("lockGiftPack", [ch_bytes]), 0, "Lock gift pack")
        return steps, skipped

    async def confirm_lock(
        self, db: aiosqlite.Connection, pack_id: str, data: ConfirmLock, sender: Optional[str] = None
    ) -> Result[Dict[str, Any]]:
        """
        Record the wallet's lock transaction and on-chain ids, then reconcile.
        The pack only becomes LOCKED once the ledger shows it locked.
        """
        loaded = await drafts.get(db, pack_id)
        if not loaded.ok:
            return loaded
        pack = loaded.value
        if sender and sender.lower() != pack["sender_address"].lower():
            return Result.fail(ErrorKind.FORBIDDEN, "Only the sender may confirm this gift pack")
        if pack["status"] == PackStatus.LOCKED.value:
            return loaded
        if pack["status"] != PackStatus.LOCK_PENDING.value:
            return Result.fail(
                ErrorKind.STATE, f"Gift pack is {pack['status']}; generate a lock plan before confirming"
            )

        fields: Dict[str, Any] = {"lock_tx_hash": data.tx_hash}
        if data.on_chain_gift_id is not None:
            fields["gift_id_on_chain"] = data.on_chain_gift_id
        if data.on_chain_gift_ids:
            fields["gift_ids_on_chain"] = json.dumps(list(dict.fromkeys(data.on_chain_gift_ids)))
        try:
            await transition_status(db, pack_id, PackStatus.LOCK_PENDING.value, PackStatus.LOCK_PENDING.value, **fields)
            await db.commit()
        except aiosqlite.IntegrityError:
            await db.rollback()
            return Result.fail(ErrorKind.CONFLICT, "On-chain gift ID is already linked to another gift pack")

        reconciled = await self.reconciler.reconcile(db, pack_id)
        if not reconciled.ok:
            logger.info("Lock of %s not yet visible on the ledger: %s", pack_id, reconciled.error.message)
        return await drafts.get(db, pack_id)
