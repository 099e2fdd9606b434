"""
GiftPacks — Chain status reconciler
Reads pack state from the escrow ledger through an ordered list of typed read
strategies and derives the canonical status. The derived status is advisory;
the ledger's own claim call remains the arbiter of at-most-once claiming.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

import aiosqlite
from web3 import Web3
from web3.exceptions import ContractLogicError

import drafts
from database import transition_status
from errors import ErrorKind, Failure, Result
from ledger import LEDGER_FAULTS, ZERO_ADDRESS, Disabled, LedgerConnection, classify_fault, disabled_failure
from models import ChainStatus, ChainStatusOut, OnChainGift, PackStatus

logger = logging.getLogger(__name__)

# Numeric gift id (legacy single-asset gifts) or 0x-prefixed bytes32 code hash
Reference = Union[int, str]

_ABSENCE_MARKERS = ("no gift", "does not exist", "not found")


def _is_code_hash(ref: Reference) -> bool:
    return isinstance(ref, str) and ref.startswith("0x") and len(ref) == 66


def _is_gift_id(ref: Reference) -> bool:
    return isinstance(ref, int) and ref >= 0


def _absent(sender: str) -> bool:
    return not sender or sender.lower() == ZERO_ADDRESS


# ── Decoders: raw tuple -> OnChainGift, None when the ledger reports absence ─

def _decode_pack(raw: Any) -> Optional[OnChainGift]:
    sender, expiry, asset_count, locked, claimed = raw
    if _absent(sender):
        return None
    return OnChainGift(
        sender=sender, expiry_timestamp=int(expiry), claimed=bool(claimed),
        locked=bool(locked), asset_count=int(asset_count), source="getGiftPack",
    )


def _decode_gift(raw: Any) -> Optional[OnChainGift]:
    token_address, token_id, amount, sender, expiry, claimed = raw
    if _absent(sender):
        return None
    return OnChainGift(
        token_address=token_address, token_id=str(token_id), amount=str(amount),
        sender=sender, expiry_timestamp=int(expiry), claimed=bool(claimed), source="getGift",
    )


def _decode_gift_status(raw: Any) -> Optional[OnChainGift]:
    exists, claimed, sender, expiry = raw
    if not exists:
        return None
    return OnChainGift(
        sender=sender, expiry_timestamp=int(expiry), claimed=bool(claimed), source="getGiftStatus",
    )


def _decode_gifts_mapping(raw: Any) -> Optional[OnChainGift]:
    sender, token_address, token_id, amount, expiry, claimed = raw
    if _absent(sender):
        return None
    return OnChainGift(
        token_address=token_address, token_id=str(token_id), amount=str(amount),
        sender=sender, expiry_timestamp=int(expiry), claimed=bool(claimed), source="gifts",
    )


@dataclass(frozen=True)
class ReadStrategy:
    function: str
    accepts: Callable[[Reference], bool]
    decode: Callable[[Any], Optional[OnChainGift]]
    to_arg: Callable[[Reference], Any] = lambda ref: ref


READ_STRATEGIES: List[ReadStrategy] = [
    ReadStrategy("getGiftPack", _is_code_hash, _decode_pack, lambda ref: Web3.to_bytes(hexstr=ref)),
    ReadStrategy("getGift", _is_gift_id, _decode_gift),
    ReadStrategy("getGiftStatus", _is_gift_id, _decode_gift_status),
    ReadStrategy("gifts", _is_gift_id, _decode_gifts_mapping),
]


def derive_status(gift: OnChainGift, now: Optional[float] = None) -> ChainStatus:
    now = time.time() if now is None else now
    if gift.claimed:
        return ChainStatus.CLAIMED
    if not gift.locked:
        return ChainStatus.LOCK_PENDING
    if gift.expiry_timestamp and gift.expiry_timestamp < now:
        return ChainStatus.EXPIRED
    return ChainStatus.LOCKED


def pack_reference(pack: Dict[str, Any]) -> Optional[Reference]:
    if pack.get("code_hash"):
        return pack["code_hash"]
    if pack.get("gift_id_on_chain") is not None:
        return pack["gift_id_on_chain"]
    if pack.get("gift_ids_on_chain"):
        return pack["gift_ids_on_chain"][0]
    return None


class ChainStatusReconciler:
    def __init__(self, conn: LedgerConnection, strategies: Optional[List[ReadStrategy]] = None):
        self.conn = conn
        self.strategies = strategies or READ_STRATEGIES

    async def fetch(self, reference: Reference) -> Result[OnChainGift]:
        """
        Try each read shape that accepts the reference, in order. Individual
        shape failures are absorbed; NOT_FOUND is returned once the ledger
        reports absence or every shape has failed. If every failure was a
        network fault the request is reported as NETWORK instead.
        """
        if isinstance(self.conn, Disabled):
            return Result.from_failure(disabled_failure(self.conn, "fetch"))
        ledger = self.conn.ledger

        failures: List[Failure] = []
        for strategy in self.strategies:
            if not strategy.accepts(reference):
                continue
            try:
                raw = await ledger.call(strategy.function, strategy.to_arg(reference))
            except ContractLogicError as exc:
                if any(marker in str(exc).lower() for marker in _ABSENCE_MARKERS):
                    return self._not_found(reference)
                failures.append(classify_fault(exc))
                logger.debug("Read shape %s reverted for %s: %s", strategy.function, reference, exc)
                continue
            except LEDGER_FAULTS as exc:
                failures.append(classify_fault(exc))
                logger.debug("Read shape %s failed for %s: %s", strategy.function, reference, exc)
                continue

            try:
                gift = strategy.decode(raw)
            except (TypeError, ValueError) as exc:
                failures.append(Failure(ErrorKind.CALL_REVERTED, f"Unexpected {strategy.function} output: {exc}"))
                continue
            if gift is None:
                return self._not_found(reference)
            return Result.success(gift)

        if failures and all(f.kind == ErrorKind.NETWORK for f in failures):
            return Result.from_failure(failures[-1])
        if failures:
            logger.warning("All ledger read shapes failed for %s", reference)
        return self._not_found(reference)

    @staticmethod
    def _not_found(reference: Reference) -> Result:
        return Result.fail(ErrorKind.NOT_FOUND, f"Gift {reference} does not exist on the ledger")

    async def fetch_status(self, reference: Reference) -> Result[ChainStatusOut]:
        fetched = await self.fetch(reference)
        if not fetched.ok:
            return fetched
        return Result.success(ChainStatusOut(
            reference=str(reference), status=derive_status(fetched.value), gift=fetched.value,
        ))

    async def reconcile(self, db: aiosqlite.Connection, pack_id: str) -> Result[ChainStatusOut]:
        """
        Observe the ledger for a pack and promote LOCK_PENDING -> LOCKED once the
        ledger shows it locked. Never writes CLAIMED: claims go through
        ClaimCoordinator so a ClaimTask accompanies every claimed pack.
        """
        loaded = await drafts.get(db, pack_id)
        if not loaded.ok:
            return loaded
        pack = loaded.value
        reference = pack_reference(pack)
        if reference is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Gift pack has no on-chain reference yet")

        observed = await self.fetch_status(reference)
        if not observed.ok:
            return observed
        out = observed.value
        pack_status = PackStatus(pack["status"])

        if pack_status == PackStatus.LOCK_PENDING and out.status != ChainStatus.LOCK_PENDING:
            if await transition_status(db, pack_id, PackStatus.LOCK_PENDING.value, PackStatus.LOCKED.value):
                logger.info("Gift pack %s observed locked on the ledger; now LOCKED", pack_id)
            await db.commit()
            pack_status = PackStatus((await drafts.get(db, pack_id)).value["status"])

        out.pack_status = pack_status
        return Result.success(out)

    async def preview(self, db: aiosqlite.Connection, gift_id: int) -> Result[Dict[str, Any]]:
        found = await drafts.find_by_on_chain_id(db, gift_id)
        if not found.ok:
            return found
        observed = await self.fetch_status(gift_id)
        if not observed.ok:
            return observed
        observed.value.pack_status = PackStatus(found.value["status"])
        return Result.success({"gift_pack": found.value, "on_chain": observed.value})
