"""
GiftPacks — Auth dependencies
  - verify_client_secret:  shared app secret header (blocks unauthenticated requests)
  - verify_webhook_secret: shared secret the relay sends with task callbacks
  - sender_identity:       wallet address asserted by the upstream session issuer
"""
from typing import Optional

from fastapi import Header, HTTPException

import config


async def verify_client_secret(x_giftpacks_secret: str = Header(default="")) -> None:
    """
    Validate the shared app secret sent in every request.
    Set CLIENT_SECRET env var to enable. If unset, validation is skipped (dev mode).
    """
    if config.CLIENT_SECRET and x_giftpacks_secret != config.CLIENT_SECRET:
        raise HTTPException(status_code=401, detail="Invalid or missing client secret.")


async def verify_webhook_secret(x_webhook_secret: str = Header(default="")) -> None:
    if config.WEBHOOK_SECRET and x_webhook_secret != config.WEBHOOK_SECRET:
        raise HTTPException(status_code=401, detail="Invalid or missing webhook secret.")


async def sender_identity(x_sender_address: Optional[str] = Header(default=None)) -> Optional[str]:
    """
    Sender wallet address, as authenticated upstream. When absent the ownership
    checks are skipped, which matches the dev-mode behaviour of CLIENT_SECRET.
    """
    if x_sender_address is None:
        return None
    return x_sender_address.strip() or None
