"""
HTTP tests through FastAPI's TestClient.
"""
import config
from ledger import Disabled
from relay import MockRelay
from tests.conftest import OTHER, SENDER, TOKEN, future_expiry


def create_pack(client, code="XYZ", items=1):
    resp = client.post("/giftpacks", json={
        "sender_address": SENDER, "expiry": future_expiry().isoformat(), "message": "enjoy", "gift_code": code,
    })
    assert resp.status_code == 201, resp.text
    pack = resp.json()
    for _ in range(items):
        added = client.post(f"/giftpacks/{pack['id']}/items",
                            json={"type": "FUNGIBLE", "contract": TOKEN, "amount": "10"})
        assert added.status_code == 201, added.text
    return pack["id"]


def lock(client, fake_ledger, pack_id, code="XYZ", gift_id=7):
    plan = client.post(f"/giftpacks/{pack_id}/lock")
    assert plan.status_code == 200, plan.text
    fake_ledger.put_pack(code, asset_count=1, locked=True)
    confirmed = client.patch(f"/giftpacks/{pack_id}/on-chain", json={"tx_hash": "0xlock", "on_chain_gift_id": gift_id})
    assert confirmed.status_code == 200, confirmed.text
    return plan.json(), confirmed.json()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_create_read_and_validate(client):
    pack_id = create_pack(client)
    pack = client.get(f"/giftpacks/{pack_id}").json()
    assert pack["status"] == "DRAFT"
    assert len(pack["items"]) == 1
    report = client.get(f"/giftpacks/{pack_id}/validate").json()
    assert report == {"is_valid": True, "errors": []}


def test_duplicate_code_is_409(client):
    create_pack(client, items=0)
    resp = client.post("/giftpacks", json={
        "sender_address": SENDER, "expiry": future_expiry().isoformat(), "gift_code": "XYZ",
    })
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "DUPLICATE"


def test_error_body_shape_for_missing_pack(client):
    resp = client.get("/giftpacks/missing")
    assert resp.status_code == 404
    assert resp.json()["detail"] == {"error": "NOT_FOUND", "message": "GiftPack not found"}


def test_malformed_item_lists_details(client):
    pack_id = create_pack(client, items=0)
    resp = client.post(f"/giftpacks/{pack_id}/items", json={"type": "FUNGIBLE", "contract": "0x12", "amount": "-1"})
    assert resp.status_code == 400
    assert len(resp.json()["detail"]["details"]) == 2


def test_sender_header_enforces_ownership(client):
    pack_id = create_pack(client, items=0)
    resp = client.delete(f"/giftpacks/{pack_id}", headers={"X-Sender-Address": OTHER})
    assert resp.status_code == 403
    assert client.delete(f"/giftpacks/{pack_id}", headers={"X-Sender-Address": SENDER}).status_code == 200


def test_client_secret_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(config, "CLIENT_SECRET", "s3cret")
    assert client.get("/giftpacks/user/" + SENDER).status_code == 401
    ok = client.get("/giftpacks/user/" + SENDER, headers={"X-GiftPacks-Secret": "s3cret"})
    assert ok.status_code == 200
    assert client.get("/health").status_code == 200


def test_lock_then_claim_unsigned_and_confirm(client, fake_ledger):
    pack_id = create_pack(client)
    plan, confirmed = lock(client, fake_ledger, pack_id)
    assert [s["kind"] for s in plan["steps"]] == ["create", "attach", "lock"]
    assert confirmed["status"] == "LOCKED"

    status = client.get(f"/giftpacks/{pack_id}/chain-status").json()
    assert status["status"] == "LOCKED"

    claim = client.post("/claim", json={"gift_code": "XYZ"})
    assert claim.status_code == 200, claim.text
    assert claim.json()["mode"] == "unsigned"

    done = client.post("/claim/confirm", json={"gift_id": 7, "tx_hash": "0xabc"})
    assert done.json()["status"] == "CLAIMED"
    again = client.post("/claim/confirm", json={"gift_id": 7, "tx_hash": "0xabc"})
    assert again.status_code == 400
    assert again.json()["detail"]["error"] == "INVALID_STATE"

    assert client.post("/claim/code/XYZ").status_code == 404
    task = client.get("/claim/status/7").json()
    assert task == {"gift_pack_id": pack_id, "task_id": "0xabc", "status": "CLAIMED"}


def test_claim_requires_a_reference(client):
    resp = client.post("/claim", json={"claimer": SENDER})
    assert resp.status_code == 400


def test_claim_status_without_attempt(client, fake_ledger):
    pack_id = create_pack(client, code="WAITING")
    lock(client, fake_ledger, pack_id, code="WAITING")
    resp = client.get("/claim/status/WAITING")
    assert resp.status_code == 404
    assert resp.json()["detail"]["message"] == "No claim in progress"


def test_mock_relay_claim_settles(make_client, conn, fake_ledger):
    client = make_client(conn, relay=MockRelay())
    pack_id = create_pack(client)
    lock(client, fake_ledger, pack_id)
    resp = client.post("/claim/code/XYZ").json()
    assert resp["mode"] == "relay"
    assert resp["status"] == "CLAIMED"
    assert client.get(f"/giftpacks/{pack_id}").json()["status"] == "CLAIMED"


def test_relay_webhook_is_idempotent(make_client, conn, fake_ledger, with_db):
    client = make_client(conn, relay=MockRelay())
    pack_id = create_pack(client)
    lock(client, fake_ledger, pack_id)

    async def seed(db):
        await db.execute(
            "INSERT INTO claim_tasks (id, gift_pack_id, task_id, status, created_at, updated_at) "
            "VALUES ('t1', ?, 'relay-1', 'PENDING', '2026-01-01T00:00:00+00:00', '2026-01-01T00:00:00+00:00')",
            (pack_id,),
        )
        await db.commit()

    with_db(seed)
    first = client.post("/webhooks/relay", json={"task_id": "relay-1", "succeeded": False})
    second = client.post("/webhooks/relay", json={"task_id": "relay-1", "succeeded": False})
    assert first.json()["status"] == "applied"
    assert second.json()["status"] == "ignored"
    assert client.get(f"/giftpacks/{pack_id}").json()["status"] == "LOCKED"


def test_malformed_webhook_is_dropped(client):
    for body in (b"not json", b"[]", b'{"task_id": "x"}'):
        resp = client.post("/webhooks/relay", content=body, headers={"Content-Type": "application/json"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"


def test_webhook_secret(client, monkeypatch):
    monkeypatch.setattr(config, "WEBHOOK_SECRET", "hook")
    resp = client.post("/webhooks/relay", json={"task_id": "x", "succeeded": True})
    assert resp.status_code == 401
    ok = client.post("/webhooks/relay", json={"task_id": "x", "succeeded": True}, headers={"X-Webhook-Secret": "hook"})
    assert ok.json()["status"] == "ignored"


def test_refund_notice(client, fake_ledger):
    pack_id = create_pack(client)
    lock(client, fake_ledger, pack_id)
    resp = client.post(f"/giftpacks/{pack_id}/refunded")
    assert resp.json()["status"] == "REFUNDED"


def test_ledger_status_reports_gate(client, fake_ledger):
    fake_ledger.contract_state = (True, 1700000000, True)
    body = client.get("/ledger/status").json()
    assert body["mode"] == "REAL"
    assert body["is_paused"] is True
    assert body["relay_enabled"] is False


def test_disabled_ledger(make_client):
    client = make_client(Disabled("RPC_URL is not configured"))
    assert client.get("/ledger/status").json()["reason"] == "RPC_URL is not configured"
    pack_id = create_pack(client)
    assert client.post(f"/giftpacks/{pack_id}/lock").status_code == 503
    assert client.post("/claim", json={"gift_code": "XYZ"}).status_code == 503


def test_claim_status_with_non_ascii_digits_is_not_found(client):
    resp = client.get("/claim/status/²")
    assert resp.status_code == 404
    assert resp.json()["detail"]["message"] == "Gift not found"


def test_claim_status_for_all_digit_code(client, fake_ledger):
    pack_id = create_pack(client, code="123456")
    lock(client, fake_ledger, pack_id, code="123456", gift_id=7)
    done = client.post("/claim/confirm", json={"gift_code": "123456", "tx_hash": "0xabc"})
    assert done.status_code == 200, done.text

    by_code = client.get("/claim/status/code/123456")
    assert by_code.status_code == 200
    assert by_code.json() == {"gift_pack_id": pack_id, "task_id": "0xabc", "status": "CLAIMED"}
    assert client.get("/claim/status/7").json()["task_id"] == "0xabc"


def test_find_pack_by_on_chain_id(client, fake_ledger):
    pack_id = create_pack(client)
    lock(client, fake_ledger, pack_id, gift_id=31)
    resp = client.get("/giftpacks/on-chain/31")
    assert resp.status_code == 200
    assert resp.json()["id"] == pack_id
    assert client.get("/giftpacks/on-chain/32").status_code == 404
    assert client.get("/giftpacks/on-chain/abc").status_code == 422
