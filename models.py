"""
GiftPacks — Pydantic models (request bodies + response shapes)
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, field_validator


class PackStatus(str, Enum):
    DRAFT        = "DRAFT"
    LOCK_PENDING = "LOCK_PENDING"   # plan issued, ledger lock not yet observed
    LOCKED       = "LOCKED"
    CLAIMED      = "CLAIMED"
    REFUNDED     = "REFUNDED"


class AssetType(str, Enum):
    FUNGIBLE     = "FUNGIBLE"
    NON_FUNGIBLE = "NON_FUNGIBLE"


class ClaimStatus(str, Enum):
    PENDING    = "PENDING"
    PROCESSING = "PROCESSING"
    CLAIMED    = "CLAIMED"
    FAILED     = "FAILED"


class ChainStatus(str, Enum):
    LOCK_PENDING = "LOCK_PENDING"
    LOCKED       = "LOCKED"
    CLAIMED      = "CLAIMED"
    EXPIRED      = "EXPIRED"


def _strip_code(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v or None


# ── Requests ──────────────────────────────────────────────────────────────────

class CreateGiftPack(BaseModel):
    sender_address: str
    expiry: datetime
    message: Optional[str] = None
    gift_code: Optional[str] = None  # secret claim code, must be unique

    @field_validator("sender_address")
    @classmethod
    def sender_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("sender_address cannot be empty")
        return v.strip()

    @field_validator("gift_code")
    @classmethod
    def strip_code(cls, v: Optional[str]) -> Optional[str]:
        return _strip_code(v)


class UpdateGiftPack(BaseModel):
    message: Optional[str] = None
    expiry: Optional[datetime] = None
    gift_code: Optional[str] = None

    @field_validator("gift_code")
    @classmethod
    def strip_code(cls, v: Optional[str]) -> Optional[str]:
        return _strip_code(v)


class AddItem(BaseModel):
    type: AssetType
    contract: str              # token contract address or "native"
    token_id: Optional[str] = None
    amount: Optional[str] = None  # integer base units


class ConfirmLock(BaseModel):
    tx_hash: str
    on_chain_gift_id: Optional[int] = None
    on_chain_gift_ids: Optional[List[int]] = None


class ClaimRequest(BaseModel):
    gift_code: Optional[str] = None
    gift_id: Optional[int] = None
    claimer: Optional[str] = None

    @field_validator("gift_code")
    @classmethod
    def strip_code(cls, v: Optional[str]) -> Optional[str]:
        return _strip_code(v)


class ConfirmClaim(ClaimRequest):
    tx_hash: str

    @field_validator("tx_hash")
    @classmethod
    def tx_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("tx_hash cannot be empty")
        return v.strip()


class RelayCallback(BaseModel):
    task_id: str
    succeeded: bool


# ── Responses ─────────────────────────────────────────────────────────────────

class GiftItemOut(BaseModel):
    id: str
    type: AssetType
    contract: str
    token_id: Optional[str] = None
    amount: Optional[str] = None
    created_at: str


class GiftPackOut(BaseModel):
    id: str
    sender_address: str
    message: Optional[str] = None
    expiry: str
    status: PackStatus
    gift_code: Optional[str] = None
    code_hash: Optional[str] = None
    gift_id_on_chain: Optional[int] = None
    gift_ids_on_chain: List[int] = []
    lock_tx_hash: Optional[str] = None
    created_at: str
    updated_at: str
    items: List[GiftItemOut] = []


class ValidationReport(BaseModel):
    is_valid: bool
    errors: List[str]


class PlanStep(BaseModel):
    step: int
    kind: str            # create | attach | lock
    target: str
    data: str
    value: str           # wei, decimal string
    description: str


class LockPlan(BaseModel):
    gift_pack_id: str
    code_hash: str
    chain_id: int
    status: PackStatus
    steps: List[PlanStep]
    skipped: List[str] = []   # steps already satisfied on the ledger


class OnChainGift(BaseModel):
    token_address: Optional[str] = None
    token_id: Optional[str] = None
    amount: str = "0"
    sender: str
    expiry_timestamp: int
    claimed: bool
    locked: bool = True
    asset_count: Optional[int] = None
    source: str          # read shape that produced this record


class ChainStatusOut(BaseModel):
    reference: str
    status: ChainStatus
    gift: OnChainGift
    pack_status: Optional[PackStatus] = None


class PreviewOut(BaseModel):
    gift_pack: GiftPackOut
    on_chain: ChainStatusOut


class UnwrapInfo(BaseModel):
    """Follow-up call that turns a claimed wrapped-native amount back into the native asset."""
    contract: str
    amount: str
    data: str
    message: str
    instructions: List[str]


class ClaimCall(BaseModel):
    gift_pack_id: str
    contract: str
    function: str
    data: str
    chain_id: int
    message: str
    unwrap_info: Optional[UnwrapInfo] = None


class ClaimSubmission(BaseModel):
    gift_pack_id: str
    mode: str                        # relay | unsigned
    task_id: Optional[str] = None
    status: Optional[ClaimStatus] = None
    transaction: Optional[ClaimCall] = None


class ClaimTaskOut(BaseModel):
    gift_pack_id: str
    task_id: str
    status: ClaimStatus


class StatusResponse(BaseModel):
    status: str
    message: str


class LedgerStatusResponse(BaseModel):
    mode: str                        # REAL | DISABLED
    mock_relay: bool
    relay_enabled: bool
    escrow_address: Optional[str] = None
    chain_id: Optional[int] = None
    reason: Optional[str] = None
    is_paused: Optional[bool] = None
    active_until: Optional[int] = None
    is_active: Optional[bool] = None
