"""
GiftPacks — Relay webhook
  POST /webhooks/relay   task outcome delivery (at-least-once)
"""
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from auth import verify_webhook_secret
from config import WEBHOOK_RATE_LIMIT
from database import get_db
from limiter import limiter
from models import RelayCallback, StatusResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/relay", response_model=StatusResponse, summary="Relay task callback",
             dependencies=[Depends(verify_webhook_secret)])
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def relay_callback(request: Request):
    """
    Apply a relay outcome to its claim task. Always answers 200: `applied` when
    the outcome changed state, `ignored` for malformed, unknown or repeated
    deliveries.
    """
    try:
        data = RelayCallback.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        logger.warning("Malformed relay callback dropped: %s", exc)
        return StatusResponse(status="ignored", message="Malformed callback.")

    db = await get_db()
    try:
        outcome = await request.app.state.claims.on_relay_callback(db, data.task_id, data.succeeded)
    finally:
        await db.close()
    return StatusResponse(status=outcome, message=f"Task {data.task_id} {outcome}.")
