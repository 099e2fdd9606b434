"""
GiftPacks — Claim coordination
Resolves a claim by on-chain gift id or secret code, then either submits the
code-based claim call through the relay or hands back the unsigned call for
the claimer's wallet. Outcomes are recorded as ClaimTasks.

Every path that moves a pack to CLAIMED does so inside one write transaction
together with its ClaimTask, behind a conditional LOCKED -> CLAIMED update.
Whichever writer observes LOCKED first wins; the rest see the changed status
and no-op.
"""
import logging
from typing import Any, Dict, Optional

import aiosqlite
from web3 import Web3

import drafts
from config import AUTO_UNWRAP_WETH, NATIVE_TOKEN_POLICY, WRAPPED_NATIVE_ADDRESS
from database import (
    fetch_latest_task,
    fetch_task,
    immediate_transaction,
    new_id,
    now_utc,
    transition_status,
)
from errors import ErrorKind, Result
from ledger import NATIVE_TOKEN, Disabled, LedgerConnection, check_active, code_hash, wrapped_native
from models import (
    AssetType,
    ChainStatus,
    ClaimCall,
    ClaimStatus,
    ClaimSubmission,
    ClaimTaskOut,
    PackStatus,
    UnwrapInfo,
)
from reconciler import ChainStatusReconciler, Reference
from relay import FAILURE_STATES, PENDING_STATES, SUCCESS_STATES, Relay, RelayError

logger = logging.getLogger(__name__)

CLAIM_FUNCTION = "claimGiftPackWithCode"
NOT_CLAIMABLE = "Gift not lockable or already claimed/refunded"
OPEN_TASK_STATES = (ClaimStatus.PENDING.value, ClaimStatus.PROCESSING.value)
# Placeholder task id held while a relay submission is in flight
RESERVED_PREFIX = "submitting:"


class ClaimCoordinator:
    def __init__(
        self,
        conn: LedgerConnection,
        relay: Optional[Relay] = None,
        reconciler: Optional[ChainStatusReconciler] = None,
        auto_unwrap: bool = AUTO_UNWRAP_WETH,
        wrapped_native_address: str = WRAPPED_NATIVE_ADDRESS,
        native_policy: str = NATIVE_TOKEN_POLICY,
    ):
        self.conn = conn
        self.relay = relay
        self.reconciler = reconciler or ChainStatusReconciler(conn)
        self.wrapped = wrapped_native(wrapped_native_address) if auto_unwrap else None
        self.native_policy = native_policy

    # ── Lookup ────────────────────────────────────────────────────────────────

    async def _lookup(self, db: aiosqlite.Connection, reference: Reference) -> Result[Dict[str, Any]]:
        if isinstance(reference, int):
            return await drafts.find_by_on_chain_id(db, reference)
        return await drafts.find_by_code(db, reference)

    async def resolve(self, db: aiosqlite.Connection, reference: Reference) -> Result[Dict[str, Any]]:
        """Find the pack behind a gift id or code. Anything but a LOCKED pack is NOT_FOUND."""
        found = await self._lookup(db, reference)
        if not found.ok and found.error.kind != ErrorKind.NOT_FOUND:
            return found
        if not found.ok or found.value["status"] != PackStatus.LOCKED.value:
            return Result.fail(ErrorKind.NOT_FOUND, NOT_CLAIMABLE)
        return found

    # ── Submit ────────────────────────────────────────────────────────────────

    def _claim_call(self, pack: Dict[str, Any]) -> ClaimCall:
        code = pack["gift_code"].strip()
        ledger = self.conn.ledger
        data = ledger.encode(CLAIM_FUNCTION, [Web3.to_bytes(hexstr=code_hash(code)), code])
        return ClaimCall(
            gift_pack_id=pack["id"],
            contract=ledger.address,
            function=CLAIM_FUNCTION,
            data=data,
            chain_id=self.conn.chain_id,
            message="Call this contract method from your wallet to claim.",
            unwrap_info=self._unwrap_info(pack),
        )

    def _unwrap_info(self, pack: Dict[str, Any]) -> Optional[UnwrapInfo]:
        if not self.wrapped:
            return None
        amount = 0
        for item in pack.get("items") or []:
            contract = item["contract"].lower()
            wrapped_item = contract == self.wrapped.lower() or (
                contract == NATIVE_TOKEN and self.native_policy == "wrap"
            )
            if wrapped_item and item["type"] == AssetType.FUNGIBLE.value:
                amount += int(item["amount"] or 0)
        if not amount:
            return None
        return UnwrapInfo(
            contract=self.wrapped,
            amount=str(amount),
            data=self.conn.ledger.encode_unwrap(self.wrapped, amount),
            message="After claiming, call withdraw() on the wrapped token contract to receive the native asset",
            instructions=[
                "Claim the gift from the escrow contract",
                "Call withdraw() on the wrapped token contract with the claimed amount",
            ],
        )

    async def _ledger_precheck(self, pack: Dict[str, Any]) -> Optional[Result]:
        """Advisory read: refuse early when the ledger already shows the pack claimed or expired."""
        observed = await self.reconciler.fetch_status(code_hash(pack["gift_code"]))
        if not observed.ok:
            logger.debug("Pre-claim read for %s unavailable: %s", pack["id"], observed.error.message)
            return None
        if observed.value.status == ChainStatus.CLAIMED:
            return Result.fail(ErrorKind.NOT_FOUND, NOT_CLAIMABLE)
        if observed.value.status == ChainStatus.EXPIRED:
            return Result.fail(ErrorKind.STATE, "Gift has expired on the ledger and can only be refunded")
        return None

    async def build_claim(
        self, db: aiosqlite.Connection, reference: Reference, claimer: Optional[str] = None
    ) -> Result[ClaimSubmission]:
        if isinstance(self.conn, Disabled):
            return Result.fail(
                ErrorKind.SERVICE_UNAVAILABLE,
                f"Claiming is disabled: {self.conn.reason}. Configure the ledger connection to enable it.",
            )

        resolved = await self.resolve(db, reference)
        if not resolved.ok:
            return resolved
        pack = resolved.value
        if not (pack["gift_code"] or "").strip():
            return Result.fail(ErrorKind.STATE, "Gift pack has no gift code; it cannot be claimed by code")

        inactive = await check_active(self.conn.ledger)
        if inactive:
            return Result.from_failure(inactive)
        refused = await self._ledger_precheck(pack)
        if refused:
            return refused

        call = self._claim_call(pack)
        if self.relay is None:
            return Result.success(ClaimSubmission(gift_pack_id=pack["id"], mode="unsigned", transaction=call))
        return await self._submit_to_relay(db, pack, call, claimer)

    async def _submit_to_relay(
        self, db: aiosqlite.Connection, pack: Dict[str, Any], call: ClaimCall, claimer: Optional[str]
    ) -> Result[ClaimSubmission]:
        # One open relay task per pack: a repeat submit returns it, and a
        # reservation row holds the slot while the relay call is in flight
        row_id = new_id()
        async with immediate_transaction(db):
            latest = await fetch_latest_task(db, pack["id"])
            if latest and latest["status"] in OPEN_TASK_STATES:
                if latest["task_id"].startswith(RESERVED_PREFIX):
                    return Result.fail(ErrorKind.CONFLICT, "A claim for this gift is already being submitted")
                return Result.success(ClaimSubmission(
                    gift_pack_id=pack["id"], mode="relay",
                    task_id=latest["task_id"], status=ClaimStatus(latest["status"]),
                ))
            ts = now_utc()
            await db.execute(
                "INSERT INTO claim_tasks (id, gift_pack_id, task_id, status, claimer, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (row_id, pack["id"], RESERVED_PREFIX + row_id, ClaimStatus.PENDING.value, claimer, ts, ts),
            )

        try:
            submission = await self.relay.submit(call.chain_id, call.contract, call.data)
        except RelayError as exc:
            await db.execute("DELETE FROM claim_tasks WHERE id = ?", (row_id,))
            await db.commit()
            logger.warning("Relay submission for %s failed: %s", pack["id"], exc)
            return Result.fail(
                ErrorKind.SERVICE_UNAVAILABLE,
                "Relay is unavailable; retry the claim later.",
                [str(exc)],
            )

        await db.execute(
            "UPDATE claim_tasks SET task_id = ?, updated_at = ? WHERE id = ?",
            (submission.task_id, now_utc(), row_id),
        )
        await db.commit()
        logger.info("Claim for %s submitted to relay as task %s", pack["id"], submission.task_id)

        if submission.settled:
            await self._settle(db, submission.task_id, succeeded=True)
        task = await fetch_task(db, submission.task_id)
        return Result.success(ClaimSubmission(
            gift_pack_id=pack["id"], mode="relay",
            task_id=submission.task_id, status=ClaimStatus(task["status"]),
        ))

    # ── Confirm ───────────────────────────────────────────────────────────────

    async def confirm(
        self, db: aiosqlite.Connection, reference: Reference, tx_hash: str, claimer: Optional[str] = None
    ) -> Result[Dict[str, Any]]:
        """
        Record a claim the claimer executed themselves. Exactly one confirm per
        pack succeeds; any later one gets STATE and writes nothing.
        """
        found = await self._lookup(db, reference)
        if not found.ok:
            return found
        pack = found.value
        existing = await fetch_task(db, tx_hash)
        if existing and existing["gift_pack_id"] != pack["id"]:
            return Result.fail(ErrorKind.CONFLICT, "This transaction is already recorded for another gift pack")

        async with immediate_transaction(db):
            if not await transition_status(db, pack["id"], PackStatus.LOCKED.value, PackStatus.CLAIMED.value):
                current = await drafts.get(db, pack["id"])
                return Result.fail(
                    ErrorKind.STATE,
                    f"Gift pack is {current.value['status']}; only LOCKED packs can be confirmed as claimed",
                )
            # A relay task carrying the same id is settled in place
            ts = now_utc()
            await db.execute(
                "INSERT INTO claim_tasks (id, gift_pack_id, task_id, status, claimer, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(task_id) DO UPDATE SET status = excluded.status, updated_at = excluded.updated_at",
                (new_id(), pack["id"], tx_hash, ClaimStatus.CLAIMED.value, claimer, ts, ts),
            )

        logger.info("Gift pack %s claimed (tx %s)", pack["id"], tx_hash)
        return await drafts.get(db, pack["id"])

    # ── Status ────────────────────────────────────────────────────────────────

    async def status(self, db: aiosqlite.Connection, reference: Reference) -> Result[ClaimTaskOut]:
        found = await self._lookup(db, reference)
        if not found.ok:
            if found.error.kind == ErrorKind.NOT_FOUND:
                return Result.fail(ErrorKind.NOT_FOUND, "Gift not found")
            return found
        pack_id = found.value["id"]

        task = await fetch_latest_task(db, pack_id)
        if not task:
            return Result.fail(ErrorKind.NOT_FOUND, "No claim in progress")
        in_flight = task["task_id"].startswith(RESERVED_PREFIX)
        if task["status"] in OPEN_TASK_STATES and self.relay is not None and not in_flight:
            task = await self._refresh(db, task)
        return Result.success(ClaimTaskOut(
            gift_pack_id=pack_id, task_id=task["task_id"], status=ClaimStatus(task["status"]),
        ))

    async def _refresh(self, db: aiosqlite.Connection, task: Dict[str, Any]) -> Dict[str, Any]:
        """Poll the relay for an open task; on relay trouble the stored state is returned as-is."""
        try:
            state = await self.relay.task_state(task["task_id"])
        except RelayError as exc:
            logger.warning("Could not refresh relay task %s: %s", task["task_id"], exc)
            return task

        if state in SUCCESS_STATES:
            await self._settle(db, task["task_id"], succeeded=True)
        elif state in FAILURE_STATES:
            await self._settle(db, task["task_id"], succeeded=False)
        elif state in PENDING_STATES and task["status"] == ClaimStatus.PENDING.value:
            await db.execute(
                "UPDATE claim_tasks SET status = ?, updated_at = ? WHERE task_id = ? AND status = ?",
                (ClaimStatus.PROCESSING.value, now_utc(), task["task_id"], ClaimStatus.PENDING.value),
            )
            await db.commit()
        return await fetch_task(db, task["task_id"])

    # ── Relay outcomes ────────────────────────────────────────────────────────

    async def on_relay_callback(self, db: aiosqlite.Connection, task_id: str, succeeded: bool) -> str:
        """
        Apply a relay outcome. Deliveries are at-least-once: unknown tasks and
        tasks already settled are logged and ignored. Returns "applied" or "ignored".
        """
        if not await fetch_task(db, task_id):
            logger.warning("Relay callback for unknown task %s dropped", task_id)
            return "ignored"
        return await self._settle(db, task_id, succeeded)

    async def _settle(self, db: aiosqlite.Connection, task_id: str, succeeded: bool) -> str:
        async with immediate_transaction(db):
            task = await fetch_task(db, task_id)
            if task["status"] not in OPEN_TASK_STATES:
                logger.info("Relay task %s already %s; outcome ignored", task_id, task["status"])
                return "ignored"

            new_status = ClaimStatus.FAILED
            if succeeded:
                if await transition_status(db, task["gift_pack_id"], PackStatus.LOCKED.value, PackStatus.CLAIMED.value):
                    new_status = ClaimStatus.CLAIMED
                else:
                    logger.warning(
                        "Relay task %s succeeded but gift pack %s is no longer LOCKED; task marked FAILED",
                        task_id, task["gift_pack_id"],
                    )
            await db.execute(
                "UPDATE claim_tasks SET status = ?, updated_at = ? WHERE task_id = ?",
                (new_status.value, now_utc(), task_id),
            )

        logger.info("Relay task %s for gift pack %s -> %s", task_id, task["gift_pack_id"], new_status.value)
        return "applied"
