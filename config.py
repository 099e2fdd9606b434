"""
GiftPacks — Configuration
All settings are read from environment variables with sensible defaults.
"""
import os

# ── Database ──────────────────────────────────────────────────────────────────
DATABASE_PATH          = os.getenv("DATABASE_PATH", "giftpacks.db")

# ── Draft retention ───────────────────────────────────────────────────────────
DRAFT_RETENTION_HOURS  = int(os.getenv("DRAFT_RETENTION_HOURS", "24"))
PURGE_INTERVAL_SEC     = int(os.getenv("PURGE_INTERVAL_SEC", str(60 * 60)))  # 1 hour

# ── Escrow ledger ─────────────────────────────────────────────────────────────
RPC_URL                = os.getenv("RPC_URL", "")
ESCROW_ADDRESS         = os.getenv("ESCROW_ADDRESS", "")
CHAIN_ID               = int(os.getenv("CHAIN_ID", "11155111"))  # Sepolia
RPC_TIMEOUT_SEC        = float(os.getenv("RPC_TIMEOUT_SEC", "15"))

# ── Native asset ──────────────────────────────────────────────────────────────
# allow = attach with call value, wrap = attach as the wrapped token,
# disallow = reject native items at validation
NATIVE_TOKEN_POLICY    = os.getenv("NATIVE_TOKEN_POLICY", "allow").lower()
WRAPPED_NATIVE_ADDRESS = os.getenv("WRAPPED_NATIVE_ADDRESS", "")
# Attach a withdraw() hint to unsigned claims of wrapped-native gifts
AUTO_UNWRAP_WETH       = os.getenv("AUTO_UNWRAP_WETH", "false").lower() in ("true", "1")

# ── Relay (gasless claims) ────────────────────────────────────────────────────
RELAY_URL              = os.getenv("RELAY_URL", "https://api.gelato.digital")
RELAY_API_KEY          = os.getenv("RELAY_API_KEY", "")
RELAY_TIMEOUT_SEC      = float(os.getenv("RELAY_TIMEOUT_SEC", "10"))
# Deterministic task ids + immediate success, no network calls
CLAIM_MOCK             = os.getenv("CLAIM_MOCK", "false").lower() in ("true", "1")

# ── Auth ──────────────────────────────────────────────────────────────────────
CLIENT_SECRET          = os.getenv("CLIENT_SECRET", "")   # Empty = dev mode (no auth)
WEBHOOK_SECRET         = os.getenv("WEBHOOK_SECRET", "")  # Empty = callbacks unchecked

# ── Rate limits ───────────────────────────────────────────────────────────────
RATE_LIMIT_ENABLED     = os.getenv("RATE_LIMIT_ENABLED", "true").lower() in ("true", "1")
CLAIM_RATE_LIMIT       = os.getenv("CLAIM_RATE_LIMIT", "10/minute")
WEBHOOK_RATE_LIMIT     = os.getenv("WEBHOOK_RATE_LIMIT", "120/minute")

# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL              = os.getenv("LOG_LEVEL", "INFO").upper()

# Sample values shipped in .env templates; treated as unset
PLACEHOLDER_MARKERS    = ("YOUR_", "0xYour", "your_")
