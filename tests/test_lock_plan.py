"""
Tests for lock validation, plan generation, resume and lock confirmation.
"""
import time

from web3 import Web3

import drafts
from errors import ErrorKind
from ledger import Disabled, code_hash
from lock_plan import LockOrchestrator
from models import AddItem, AssetType, ConfirmLock, CreateGiftPack, PackStatus
from tests.conftest import OTHER, SENDER, TOKEN, future_expiry


def selector(signature):
    return Web3.to_hex(Web3.keccak(text=signature)[:4])


async def make_draft(db, code="XYZ", items=None, expiry=None):
    pack = (await drafts.create(db, CreateGiftPack(
        sender_address=SENDER, expiry=expiry or future_expiry(), gift_code=code))).value
    for item in items if items is not None else [AddItem(type=AssetType.FUNGIBLE, contract=TOKEN, amount="10")]:
        await drafts.add_item(db, pack["id"], item)
    return pack["id"]


# ── validate ──────────────────────────────────────────────────────────────────

def test_valid_draft_has_no_errors(with_db, conn):
    async def go(db):
        return await LockOrchestrator(conn).validate(db, await make_draft(db))

    report = with_db(go).value
    assert report.is_valid
    assert report.errors == []


def test_empty_draft_reports_item_count(with_db, conn):
    async def go(db):
        return await LockOrchestrator(conn).validate(db, await make_draft(db, items=[]))

    report = with_db(go).value
    assert not report.is_valid
    assert "Gift pack must contain at least one item" in report.errors


def test_past_expiry_is_reported(with_db, conn):
    async def go(db):
        pack_id = await make_draft(db, expiry=future_expiry(days=-1))
        return await LockOrchestrator(conn).validate(db, pack_id)

    assert "Gift pack expiry must be in the future" in with_db(go).value.errors


# ── generate_plan ─────────────────────────────────────────────────────────────

def test_plan_has_create_attach_lock_in_order(with_db, conn, fake_ledger):
    items = [
        AddItem(type=AssetType.FUNGIBLE, contract=TOKEN, amount="10"),
        AddItem(type=AssetType.NON_FUNGIBLE, contract=TOKEN, token_id="7"),
        AddItem(type=AssetType.FUNGIBLE, contract="native", amount="5000"),
    ]

    async def go(db):
        pack_id = await make_draft(db, items=items)
        plan = await LockOrchestrator(conn).generate_plan(db, pack_id)
        return plan, await drafts.get(db, pack_id)

    plan, pack = with_db(go)
    steps = plan.value.steps
    assert [s.kind for s in steps] == ["create", "attach", "attach", "attach", "lock"]
    assert [s.step for s in steps] == [1, 2, 3, 4, 5]
    assert all(s.target == fake_ledger.address for s in steps)
    assert steps[0].data[:10] == selector("createGiftPack(uint256,string,bytes32)")
    assert steps[1].data[:10] == selector("addAssetToGiftPack(bytes32,uint8,address,uint256,uint256)")
    assert steps[4].data[:10] == selector("lockGiftPack(bytes32)")
    assert [s.value for s in steps] == ["0", "0", "0", "5000", "0"]
    assert plan.value.code_hash == code_hash("XYZ")
    assert plan.value.status == PackStatus.LOCK_PENDING
    assert pack.value["status"] == PackStatus.LOCK_PENDING.value
    assert pack.value["code_hash"] == code_hash("XYZ")


def test_plan_requires_gift_code(with_db, conn):
    async def go(db):
        return await LockOrchestrator(conn).generate_plan(db, await make_draft(db, code=None))

    result = with_db(go)
    assert result.error.kind == ErrorKind.VALIDATION
    assert "Gift code is required" in result.error.message


def test_invalid_draft_is_not_planned(with_db, conn):
    async def go(db):
        pack_id = await make_draft(db, items=[])
        return await LockOrchestrator(conn).generate_plan(db, pack_id), await drafts.get(db, pack_id)

    result, pack = with_db(go)
    assert result.error.kind == ErrorKind.VALIDATION
    assert "Gift pack must contain at least one item" in result.error.details
    assert pack.value["status"] == PackStatus.DRAFT.value


def test_plan_rejected_for_other_sender(with_db, conn):
    async def go(db):
        return await LockOrchestrator(conn).generate_plan(db, await make_draft(db), sender=OTHER)

    assert with_db(go).error.kind == ErrorKind.FORBIDDEN


def test_plan_resumes_after_partial_execution(with_db, conn, fake_ledger):
    items = [
        AddItem(type=AssetType.FUNGIBLE, contract=TOKEN, amount="10"),
        AddItem(type=AssetType.FUNGIBLE, contract=TOKEN, amount="20"),
    ]

    async def go(db):
        pack_id = await make_draft(db, items=items)
        orchestrator = LockOrchestrator(conn)
        first = await orchestrator.generate_plan(db, pack_id)
        # create + first attach mined, second attach reverted
        fake_ledger.put_pack("XYZ", asset_count=1, locked=False)
        second = await orchestrator.generate_plan(db, pack_id)
        return first, second, await drafts.get(db, pack_id)

    first, second, pack = with_db(go)
    assert len(first.value.steps) == 4
    assert [s.kind for s in second.value.steps] == ["attach", "lock"]
    assert second.value.skipped == ["create", f"attach:{pack.value['items'][0]['id']}"]
    assert second.value.steps[0].description == f"Attach 20 of {Web3.to_checksum_address(TOKEN)}"
    assert pack.value["status"] == PackStatus.LOCK_PENDING.value


def test_plan_for_already_locked_pack_marks_it_locked(with_db, conn, fake_ledger):
    async def go(db):
        pack_id = await make_draft(db)
        fake_ledger.put_pack("XYZ", asset_count=1, locked=True)
        return await LockOrchestrator(conn).generate_plan(db, pack_id), await drafts.get(db, pack_id)

    plan, pack = with_db(go)
    assert plan.value.steps == []
    assert plan.value.skipped[-1] == "lock"
    assert plan.value.status == PackStatus.LOCKED
    assert pack.value["status"] == PackStatus.LOCKED.value


def test_code_owned_by_another_sender_on_ledger_is_conflict(with_db, conn, fake_ledger):
    async def go(db):
        pack_id = await make_draft(db)
        fake_ledger.put_pack("XYZ", sender=OTHER, locked=False)
        return await LockOrchestrator(conn).generate_plan(db, pack_id), await drafts.get(db, pack_id)

    result, pack = with_db(go)
    assert result.error.kind == ErrorKind.CONFLICT
    assert pack.value["status"] == PackStatus.DRAFT.value


def test_paused_ledger_blocks_planning(with_db, conn, fake_ledger):
    fake_ledger.contract_state = (True, 0, True)

    async def go(db):
        return await LockOrchestrator(conn).generate_plan(db, await make_draft(db))

    result = with_db(go)
    assert result.error.kind == ErrorKind.LEDGER_INACTIVE
    assert result.error.message == "Escrow contract is paused."


def test_ended_operation_period_blocks_planning(with_db, conn, fake_ledger):
    fake_ledger.contract_state = (False, int(time.time()) - 60, True)

    async def go(db):
        return await LockOrchestrator(conn).generate_plan(db, await make_draft(db))

    assert with_db(go).error.kind == ErrorKind.LEDGER_INACTIVE


def test_disabled_ledger_cannot_plan(with_db):
    async def go(db):
        return await LockOrchestrator(Disabled("RPC_URL is not configured")).generate_plan(db, await make_draft(db))

    result = with_db(go)
    assert result.error.kind == ErrorKind.SERVICE_UNAVAILABLE
    assert "RPC_URL is not configured" in result.error.message


def test_locked_pack_cannot_be_replanned(with_db, conn):
    async def go(db):
        pack_id = await make_draft(db)
        await db.execute("UPDATE gift_packs SET status = 'LOCKED' WHERE id = ?", (pack_id,))
        await db.commit()
        return await LockOrchestrator(conn).generate_plan(db, pack_id)

    assert with_db(go).error.kind == ErrorKind.STATE


# ── confirm_lock ──────────────────────────────────────────────────────────────

def test_confirm_lock_waits_for_ledger(with_db, conn, fake_ledger):
    async def go(db):
        pack_id = await make_draft(db)
        orchestrator = LockOrchestrator(conn)
        await orchestrator.generate_plan(db, pack_id)
        pending = await orchestrator.confirm_lock(db, pack_id, ConfirmLock(tx_hash="0xlock", on_chain_gift_id=7))
        fake_ledger.put_pack("XYZ", asset_count=1, locked=True)
        locked = await orchestrator.confirm_lock(db, pack_id, ConfirmLock(tx_hash="0xlock", on_chain_gift_id=7))
        return pending, locked

    pending, locked = with_db(go)
    assert pending.value["status"] == PackStatus.LOCK_PENDING.value
    assert pending.value["lock_tx_hash"] == "0xlock"
    assert pending.value["gift_id_on_chain"] == 7
    assert locked.value["status"] == PackStatus.LOCKED.value


def test_confirm_lock_requires_a_plan(with_db, conn):
    async def go(db):
        return await LockOrchestrator(conn).confirm_lock(db, await make_draft(db), ConfirmLock(tx_hash="0x1"))

    assert with_db(go).error.kind == ErrorKind.STATE


def test_on_chain_id_cannot_be_linked_twice(with_db, conn):
    async def go(db):
        orchestrator = LockOrchestrator(conn)
        first = await make_draft(db, code="A")
        second = await make_draft(db, code="B")
        await orchestrator.generate_plan(db, first)
        await orchestrator.generate_plan(db, second)
        await orchestrator.confirm_lock(db, first, ConfirmLock(tx_hash="0x1", on_chain_gift_id=5))
        return await orchestrator.confirm_lock(db, second, ConfirmLock(tx_hash="0x2", on_chain_gift_id=5))

    assert with_db(go).error.kind == ErrorKind.CONFLICT


# ── native asset policy ───────────────────────────────────────────────────────

NATIVE_ITEM = AddItem(type=AssetType.FUNGIBLE, contract="native", amount="5000")
WRAPPED = "0x4444444444444444444444444444444444444444"


def validate_native(with_db, conn, **policy):
    async def go(db):
        pack_id = await make_draft(db, items=[NATIVE_ITEM])
        return await LockOrchestrator(conn, **policy).validate(db, pack_id)

    return with_db(go).value


def test_disallowed_native_asset_is_reported(with_db, conn):
    report = validate_native(with_db, conn, native_policy="disallow")
    assert not report.is_valid
    assert "Native token is not supported for smart contract gifts" in report.errors


def test_wrapping_needs_a_wrapped_token_address(with_db, conn):
    report = validate_native(with_db, conn, native_policy="wrap", wrapped_native_address="")
    assert report.errors == ["WRAPPED_NATIVE_ADDRESS is not configured but native token was provided"]
    placeholder = validate_native(with_db, conn, native_policy="wrap", wrapped_native_address="0xYourWethHere")
    assert not placeholder.is_valid


def test_allowed_native_asset_needs_no_wrapped_token(with_db, conn):
    report = validate_native(with_db, conn, native_policy="allow", wrapped_native_address="")
    assert report.is_valid


def test_unknown_policy_falls_back_to_allow(conn):
    assert LockOrchestrator(conn, native_policy="sometimes").native_policy == "allow"


def test_wrap_policy_attaches_wrapped_token(with_db, conn):
    async def go(db):
        pack_id = await make_draft(db, items=[NATIVE_ITEM])
        orchestrator = LockOrchestrator(conn, native_policy="wrap", wrapped_native_address=WRAPPED)
        return await orchestrator.generate_plan(db, pack_id)

    attach = with_db(go).value.steps[1]
    assert attach.kind == "attach"
    assert attach.value == "0"
    assert WRAPPED[2:] in attach.data.lower()
    assert Web3.to_checksum_address(WRAPPED) in attach.description
