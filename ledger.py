"""
GiftPacks — Escrow ledger connection
ABI surface of the escrow contract, call encoding, bounded read calls,
the pause/active-window gate and classification of ledger faults.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from web3 import AsyncWeb3, Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    Web3Exception,
)

from config import CHAIN_ID, ESCROW_ADDRESS, PLACEHOLDER_MARKERS, RPC_TIMEOUT_SEC, RPC_URL
from errors import ErrorKind, Failure

logger = logging.getLogger(__name__)

NATIVE_TOKEN  = "native"
ZERO_ADDRESS  = "0x0000000000000000000000000000000000000000"

# Faults a ledger call can raise that are classified instead of propagated
LEDGER_FAULTS = (Web3Exception, asyncio.TimeoutError, OSError)


def _fn(name: str, inputs: List[tuple], outputs: List[tuple] = (), mutability: str = "nonpayable") -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t, "internalType": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t, "internalType": t} for n, t in outputs],
        "stateMutability": mutability,
    }


ESCROW_ABI = [
    # ── Pack lifecycle ────────────────────────────────────────────────────────
    _fn("createGiftPack", [("expiry", "uint256"), ("message", "string"), ("codeHash", "bytes32")]),
    _fn("addAssetToGiftPack",
        [("codeHash", "bytes32"), ("assetType", "uint8"), ("tokenAddress", "address"),
         ("tokenId", "uint256"), ("amount", "uint256")],
        mutability="payable"),
    _fn("lockGiftPack", [("codeHash", "bytes32")]),
    _fn("claimGiftPackWithCode", [("codeHash", "bytes32"), ("code", "string")]),
    # ── Reads ─────────────────────────────────────────────────────────────────
    _fn("getGiftPack", [("codeHash", "bytes32")],
        [("sender", "address"), ("expiryTimestamp", "uint256"), ("assetCount", "uint256"),
         ("locked", "bool"), ("claimed", "bool")],
        mutability="view"),
    _fn("getGift", [("giftId", "uint256")],
        [("tokenAddress", "address"), ("tokenId", "uint256"), ("amount", "uint256"),
         ("sender", "address"), ("expiryTimestamp", "uint256"), ("claimed", "bool")],
        mutability="view"),
    # Legacy read shapes kept by older deployments
    _fn("getGiftStatus", [("giftId", "uint256")],
        [("exists", "bool"), ("claimed", "bool"), ("sender", "address"), ("expiryTimestamp", "uint256")],
        mutability="view"),
    _fn("gifts", [("giftId", "uint256")],
        [("sender", "address"), ("tokenAddress", "address"), ("tokenId", "uint256"),
         ("amount", "uint256"), ("expiryTimestamp", "uint256"), ("claimed", "bool")],
        mutability="view"),
    # ── Admin gate ────────────────────────────────────────────────────────────
    _fn("getContractStatus", [],
        [("isPaused", "bool"), ("activeUntil", "uint256"), ("isActive", "bool")],
        mutability="view"),
]

# Asset type discriminator expected by addAssetToGiftPack
ASSET_TYPE_CODES = {"FUNGIBLE": 0, "NON_FUNGIBLE": 1}

# Wrapped native token (WETH-style); only withdraw() is ever encoded
WRAPPED_NATIVE_ABI = [_fn("withdraw", [("wad", "uint256")])]

NATIVE_POLICIES = ("allow", "wrap", "disallow")


def code_hash(code: str) -> str:
    """keccak256 of the trimmed gift code. Case-sensitive; only edge whitespace is ignored."""
    return Web3.to_hex(Web3.keccak(text=code.strip()))


def is_placeholder(value: str) -> bool:
    return any(marker in value for marker in PLACEHOLDER_MARKERS)


def wrapped_native(address: str) -> Optional[str]:
    """Checksummed wrapped-native token address, or None when unset or invalid."""
    if not address or is_placeholder(address) or not Web3.is_address(address):
        return None
    return Web3.to_checksum_address(address)


@dataclass(frozen=True)
class ContractStatus:
    is_paused: bool
    active_until: int
    is_active: bool


class EscrowLedger:
    """Thin async wrapper around the escrow contract."""

    def __init__(self, rpc_url: str, escrow_address: str, timeout: float = RPC_TIMEOUT_SEC):
        self.rpc_url = rpc_url
        self.address = Web3.to_checksum_address(escrow_address)
        self.timeout = timeout
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.contract = self.w3.eth.contract(address=self.address, abi=ESCROW_ABI)

    def encode(self, fn_name: str, args: List[Any]) -> str:
        return self.contract.encode_abi(fn_name, args=args)

    def encode_unwrap(self, token: str, amount: int) -> str:
        wrapped = self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=WRAPPED_NATIVE_ABI)
        return wrapped.encode_abi("withdraw", args=[amount])

    async def call(self, fn_name: str, *args: Any) -> Any:
        """Read-only call bounded by the configured timeout."""
        fn = getattr(self.contract.functions, fn_name)(*args)
        return await asyncio.wait_for(fn.call(), timeout=self.timeout)

    async def contract_status(self) -> ContractStatus:
        is_paused, active_until, is_active = await self.call("getContractStatus")
        return ContractStatus(bool(is_paused), int(active_until), bool(is_active))


@dataclass(frozen=True)
class Configured:
    ledger: EscrowLedger
    chain_id: int


@dataclass(frozen=True)
class Disabled:
    reason: str


LedgerConnection = Union[Configured, Disabled]


def connect_ledger(
    rpc_url: str = RPC_URL,
    escrow_address: str = ESCROW_ADDRESS,
    chain_id: int = CHAIN_ID,
    timeout: float = RPC_TIMEOUT_SEC,
) -> LedgerConnection:
    """Build the ledger connection once at startup. Incomplete config yields Disabled."""
    if not rpc_url or is_placeholder(rpc_url):
        reason = "RPC_URL is not configured"
    elif not escrow_address or is_placeholder(escrow_address) or not Web3.is_address(escrow_address):
        reason = "ESCROW_ADDRESS is missing or not a valid address"
    else:
        conn = Configured(EscrowLedger(rpc_url, escrow_address, timeout), chain_id)
        logger.info("Escrow ledger configured: contract=%s chain=%s", conn.ledger.address, chain_id)
        return conn

    logger.warning("Escrow ledger disabled: %s. Locking and claiming are unavailable.", reason)
    return Disabled(reason)


def disabled_failure(conn: Disabled, operation: str) -> Failure:
    return Failure(
        ErrorKind.SERVICE_UNAVAILABLE,
        f"Ledger operation '{operation}' is not available: {conn.reason}.",
    )


# ── Fault classification ──────────────────────────────────────────────────────

_INACTIVE_MARKERS = ("paused", "enforcedpause", "operation period has ended")


def _fault_message(exc: BaseException) -> str:
    message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
    return str(message)


def classify_fault(exc: BaseException) -> Failure:
    """Map a ledger exception to one of the known fault categories."""
    raw = _fault_message(exc)
    lowered = raw.lower()

    if isinstance(exc, (asyncio.TimeoutError, TimeExhausted)):
        return Failure(ErrorKind.NETWORK, "Ledger call timed out. RPC may be slow or down; retry later.")
    if isinstance(exc, (ProviderConnectionError, OSError)):
        return Failure(ErrorKind.NETWORK, f"Ledger RPC unreachable: {raw}")
    if any(marker in lowered for marker in _INACTIVE_MARKERS):
        return Failure(ErrorKind.LEDGER_INACTIVE, "Escrow contract is paused or its operation period has ended.")
    if "insufficient funds" in lowered:
        return Failure(ErrorKind.INSUFFICIENT_FUNDS, "Insufficient funds to pay for the transaction and gas.")
    if getattr(exc, "code", None) == 4001 or "user rejected" in lowered or "user denied" in lowered:
        return Failure(ErrorKind.USER_REJECTED, "The transaction was rejected in the wallet.")
    if isinstance(exc, (ContractLogicError, BadFunctionCallOutput)):
        return Failure(ErrorKind.CALL_REVERTED, f"Ledger call reverted: {raw}")
    return Failure(ErrorKind.CALL_REVERTED, raw)


async def check_active(ledger: EscrowLedger, now: Optional[float] = None) -> Optional[Failure]:
    """
    Read the pause flag and active window. Returns a LEDGER_INACTIVE failure when
    the escrow refuses operations, a fault for unreachable ledgers, None otherwise.
    Ledgers without the status entry point are treated as always active.
    """
    try:
        status = await ledger.contract_status()
    except (ContractLogicError, BadFunctionCallOutput):
        return None
    except LEDGER_FAULTS as exc:
        return classify_fault(exc)

    now = time.time() if now is None else now
    if status.is_paused:
        return Failure(ErrorKind.LEDGER_INACTIVE, "Escrow contract is paused.")
    if not status.is_active or (status.active_until and status.active_until < now):
        return Failure(ErrorKind.LEDGER_INACTIVE, "Escrow contract operation period has ended.")
    return None
