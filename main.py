"""
GiftPacks Escrow Server
=======================
Off-chain lifecycle for multi-asset gift packs held by an on-chain escrow.

Custody model: the server never signs or holds funds. It composes drafts,
hands the sender's wallet an ordered lock plan, mirrors the ledger's view of
each pack, and coordinates code-based claims through a gasless relay or the
claimer's own wallet.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from claims import ClaimCoordinator
from config import DRAFT_RETENTION_HOURS, LOG_LEVEL, PURGE_INTERVAL_SEC
from database import get_db, purge_stale_drafts
from ledger import connect_ledger
from limiter import limiter
from lock_plan import LockOrchestrator
from reconciler import ChainStatusReconciler
from relay import connect_relay
from routers import claim, giftpacks, system, webhooks

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger("giftpacks")


# ── Background purge ──────────────────────────────────────────────────────────

async def _purge_loop() -> None:
    """Delete stale DRAFT packs every PURGE_INTERVAL_SEC. Runs as a background task."""
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SEC)
        try:
            db = await get_db()
            try:
                deleted = await purge_stale_drafts(db, DRAFT_RETENTION_HOURS)
                if deleted:
                    logger.info("Purged %d draft(s) older than %dh", deleted, DRAFT_RETENTION_HOURS)
            finally:
                await db.close()
        except Exception:
            logger.exception("Draft purge failed; retrying next interval")


# ── Services ──────────────────────────────────────────────────────────────────

def configure_services(app: FastAPI, ledger=None, relay=None) -> None:
    """Build the ledger-bound services once and share them through app.state."""
    app.state.ledger = ledger if ledger is not None else connect_ledger()
    app.state.relay = relay
    app.state.reconciler = ChainStatusReconciler(app.state.ledger)
    app.state.orchestrator = LockOrchestrator(app.state.ledger, app.state.reconciler)
    app.state.claims = ClaimCoordinator(app.state.ledger, relay, app.state.reconciler)


# ── Lifespan ──────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialise DB, connect ledger + relay unless already injected, launch purge
    db = await get_db()
    await db.close()
    if not hasattr(app.state, "claims"):
        configure_services(app, relay=connect_relay())
    task = asyncio.create_task(_purge_loop())
    yield
    # Shutdown: cancel background task cleanly
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


# ── App ───────────────────────────────────────────────────────────────────────

app = FastAPI(
    lifespan=lifespan,
    title="GiftPacks",
    description="""
Escrow-backed gift packs: bundle tokens, NFTs and native currency behind a secret code.

## How it works

1. The sender creates a **draft** and adds items (only while DRAFT)
2. `POST /giftpacks/{id}/lock` returns the ordered ledger calls; the sender's wallet executes them
3. The server observes the ledger and moves the pack from **LOCK_PENDING** to **LOCKED**
4. The recipient claims with the secret code, through the relay or their own wallet

## Custody

The server never signs transactions or holds assets. The escrow contract is the
final arbiter of at-most-once claiming.

## Draft retention

Drafts that are never locked are deleted after **24 hours** by default
(`DRAFT_RETENTION_HOURS`).
""",
    version="1.0.0",
    license_info={"name": "MIT"},
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"],
)

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(giftpacks.router)
app.include_router(claim.router)
app.include_router(webhooks.router)
app.include_router(system.router)
