"""
GiftPacks — Rate limiter (shared instance)
Claim and webhook routes apply @limiter.limit() with the limits from config.
"""
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import RATE_LIMIT_ENABLED


def client_key(request: Request) -> str:
    """Cloudflare client IP, then the first X-Forwarded-For hop, then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    return request.headers.get("CF-Connecting-IP") or forwarded or get_remote_address(request)


limiter = Limiter(key_func=client_key, enabled=RATE_LIMIT_ENABLED)
