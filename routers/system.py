"""
GiftPacks — System routes
  GET /health          liveness check
  GET /ledger/status   ledger connection mode and escrow gate
"""
from fastapi import APIRouter, Request

from ledger import LEDGER_FAULTS, Configured, classify_fault
from models import LedgerStatusResponse, StatusResponse

router = APIRouter(tags=["System"])


@router.get("/health", response_model=StatusResponse, summary="Health check")
async def health_check():
    """Returns 200 OK if the server is running. Use for uptime monitoring."""
    return StatusResponse(status="ok", message="GiftPacks is running")


@router.get("/ledger/status", response_model=LedgerStatusResponse, summary="Ledger status")
async def ledger_status(request: Request):
    """
    Whether locking and claiming are available. When the ledger is configured
    the escrow's pause flag and active window are read live; a failed read is
    reported in `reason` rather than as an error.
    """
    conn = request.app.state.ledger
    relay = request.app.state.relay
    out = LedgerStatusResponse(
        mode="DISABLED", mock_relay=bool(relay and relay.mock), relay_enabled=relay is not None,
    )
    if not isinstance(conn, Configured):
        out.reason = conn.reason
        return out

    out.mode, out.escrow_address, out.chain_id = "REAL", conn.ledger.address, conn.chain_id
    try:
        status = await conn.ledger.contract_status()
    except LEDGER_FAULTS as exc:
        out.reason = classify_fault(exc).message
        return out
    out.is_paused, out.active_until, out.is_active = status.is_paused, status.active_until, status.is_active
    return out
