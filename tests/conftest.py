"""
Pytest fixtures for the GiftPacks tests.
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput

import database
from database import get_db
from ledger import ZERO_ADDRESS, Configured, EscrowLedger, code_hash
from limiter import limiter

SENDER = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
OTHER = "0x3333333333333333333333333333333333333333"
TOKEN = "0x2222222222222222222222222222222222222222"
ESCROW = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"
CHAIN_ID = 11155111


@dataclass
class LedgerPack:
    sender: str
    expiry: int
    asset_count: int = 0
    locked: bool = False
    claimed: bool = False


class FakeEscrowLedger(EscrowLedger):
    """
    EscrowLedger with reads answered from memory. Encoding still goes through
    the real contract ABI; no RPC is ever reached.
    """

    def __init__(self):
        super().__init__("http://ledger.invalid", ESCROW, timeout=1)
        self.packs = {}            # code hash hex -> LedgerPack
        self.reads = {}            # (function, gift id) -> raw tuple
        self.faults = {}           # function -> exception raised on call
        self.contract_state = (False, 0, True)
        self.calls = []

    def put_pack(self, code, sender=SENDER, asset_count=1, locked=True, claimed=False, expiry=None):
        self.packs[code_hash(code)] = LedgerPack(
            sender=sender,
            expiry=expiry if expiry is not None else int(time.time()) + 7 * 86400,
            asset_count=asset_count, locked=locked, claimed=claimed,
        )

    async def call(self, fn_name, *args):
        self.calls.append(fn_name)
        if fn_name in self.faults:
            raise self.faults[fn_name]
        if fn_name == "getContractStatus":
            return self.contract_state
        if fn_name == "getGiftPack":
            pack = self.packs.get(Web3.to_hex(args[0]))
            if pack is None:
                return (ZERO_ADDRESS, 0, 0, False, False)
            return (pack.sender, pack.expiry, pack.asset_count, pack.locked, pack.claimed)
        if (fn_name, args[0]) in self.reads:
            return self.reads[(fn_name, args[0])]
        raise BadFunctionCallOutput(f"Could not decode contract function call to {fn_name}")


def future_expiry(days=7):
    return datetime.now(timezone.utc) + timedelta(days=days)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def db_path(tmp_path, monkeypatch):
    """Every test gets its own SQLite file."""
    path = str(tmp_path / "giftpacks.db")
    monkeypatch.setattr(database, "DATABASE_PATH", path)
    return path


@pytest.fixture
def fake_ledger():
    return FakeEscrowLedger()


@pytest.fixture
def conn(fake_ledger):
    return Configured(fake_ledger, CHAIN_ID)


@pytest.fixture
def with_db():
    """Run `fn(db)` on a fresh connection inside its own event loop."""
    def runner(fn):
        async def main():
            db = await get_db()
            try:
                return await fn(db)
            finally:
                await db.close()
        return asyncio.run(main())
    return runner


@pytest.fixture
def make_client(monkeypatch):
    """TestClient factory with an injected ledger connection and relay."""
    from main import app, configure_services

    monkeypatch.setattr(limiter, "enabled", False)
    clients = []

    def factory(ledger, relay=None):
        configure_services(app, ledger=ledger, relay=relay)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.__exit__(None, None, None)
    for name in ("ledger", "relay", "reconciler", "orchestrator", "claims"):
        if hasattr(app.state, name):
            delattr(app.state, name)


@pytest.fixture
def client(make_client, conn):
    return make_client(conn)
