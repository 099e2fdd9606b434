"""
GiftPacks — Database helpers
Handles connection, table creation, timestamps, row mapping and the stale-draft purge.
"""
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from config import DATABASE_PATH, DRAFT_RETENTION_HOURS


# ── Connection ────────────────────────────────────────────────────────────────

async def get_db(path: Optional[str] = None) -> aiosqlite.Connection:
    db = await aiosqlite.connect(path or DATABASE_PATH)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    await db.execute("""
        CREATE TABLE IF NOT EXISTS gift_packs (
            id                 TEXT PRIMARY KEY,
            sender_address     TEXT NOT NULL,
            message            TEXT,
            expiry             TEXT NOT NULL,
            status             TEXT NOT NULL DEFAULT 'DRAFT',
            gift_code          TEXT UNIQUE,
            code_hash          TEXT,
            gift_id_on_chain   INTEGER UNIQUE,
            gift_ids_on_chain  TEXT,
            lock_tx_hash       TEXT,
            created_at         TEXT NOT NULL,
            updated_at         TEXT NOT NULL
        )
    """)
    await db.execute("CREATE INDEX IF NOT EXISTS idx_packs_sender ON gift_packs(sender_address)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_packs_status ON gift_packs(status, created_at)")
    await db.execute("""
        CREATE TABLE IF NOT EXISTS gift_items (
            id            TEXT PRIMARY KEY,
            gift_pack_id  TEXT NOT NULL REFERENCES gift_packs(id) ON DELETE CASCADE,
            type          TEXT NOT NULL,
            contract      TEXT NOT NULL,
            token_id      TEXT,
            amount        TEXT,
            created_at    TEXT NOT NULL
        )
    """)
    await db.execute("CREATE INDEX IF NOT EXISTS idx_items_pack ON gift_items(gift_pack_id)")
    await db.execute("""
        CREATE TABLE IF NOT EXISTS claim_tasks (
            id            TEXT PRIMARY KEY,
            gift_pack_id  TEXT NOT NULL REFERENCES gift_packs(id),
            task_id       TEXT NOT NULL UNIQUE,
            status        TEXT NOT NULL,
            claimer       TEXT,
            created_at    TEXT NOT NULL,
            updated_at    TEXT NOT NULL
        )
    """)
    await db.execute("CREATE INDEX IF NOT EXISTS idx_tasks_pack ON claim_tasks(gift_pack_id, created_at)")
    await db.commit()
    return db


# ── Utilities ─────────────────────────────────────────────────────────────────

def new_id() -> str:
    return str(uuid.uuid4())


def now_utc() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_utc_iso(value: datetime) -> str:
    """Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_utc(value: str) -> datetime:
    return datetime.fromisoformat(value)


def pack_row_to_dict(row: aiosqlite.Row, items: Optional[List[aiosqlite.Row]] = None) -> Dict[str, Any]:
    ids = json.loads(row["gift_ids_on_chain"]) if row["gift_ids_on_chain"] else []
    pack = {
        "id":              row["id"],
        "sender_address":  row["sender_address"],
        "message":         row["message"],
        "expiry":          row["expiry"],
        "status":          row["status"],
        "gift_code":       row["gift_code"],
        "code_hash":       row["code_hash"],
        "gift_id_on_chain": row["gift_id_on_chain"],
        "gift_ids_on_chain": ids,
        "lock_tx_hash":    row["lock_tx_hash"],
        "created_at":      row["created_at"],
        "updated_at":      row["updated_at"],
    }
    if items is not None:
        pack["items"] = [item_row_to_dict(i) for i in items]
    return pack


def item_row_to_dict(row: aiosqlite.Row) -> Dict[str, Any]:
    return {
        "id":           row["id"],
        "gift_pack_id": row["gift_pack_id"],
        "type":         row["type"],
        "contract":     row["contract"],
        "token_id":     row["token_id"],
        "amount":       row["amount"],
        "created_at":   row["created_at"],
    }


def task_row_to_dict(row: aiosqlite.Row) -> Dict[str, Any]:
    return {
        "id":           row["id"],
        "gift_pack_id": row["gift_pack_id"],
        "task_id":      row["task_id"],
        "status":       row["status"],
        "claimer":      row["claimer"],
        "created_at":   row["created_at"],
        "updated_at":   row["updated_at"],
    }


# ── Reads ─────────────────────────────────────────────────────────────────────

async def fetch_pack(db: aiosqlite.Connection, where: str, params: tuple) -> Optional[Dict[str, Any]]:
    """Load one pack plus its items (oldest first) matching a WHERE clause."""
    async with db.execute(f"SELECT * FROM gift_packs WHERE {where} LIMIT 1", params) as cursor:
        row = await cursor.fetchone()
    if not row:
        return None
    async with db.execute(
        "SELECT * FROM gift_items WHERE gift_pack_id = ? ORDER BY created_at ASC, rowid ASC",
        (row["id"],),
    ) as cursor:
        items = await cursor.fetchall()
    return pack_row_to_dict(row, items)


async def transition_status(
    db: aiosqlite.Connection, pack_id: str, expected: str, new_status: str, **fields: Any
) -> bool:
    """
    Conditional status update. Returns True only for the writer that observed
    `expected`; a concurrent writer that lost the race sees False and must no-op.
    Does not commit.
    """
    assignments = ["status = ?", "updated_at = ?"] + [f"{name} = ?" for name in fields]
    cursor = await db.execute(
        f"UPDATE gift_packs SET {', '.join(assignments)} WHERE id = ? AND status = ?",
        (new_status, now_utc(), *fields.values(), pack_id, expected),
    )
    return cursor.rowcount == 1


async def fetch_latest_task(db: aiosqlite.Connection, pack_id: str) -> Optional[Dict[str, Any]]:
    async with db.execute(
        "SELECT * FROM claim_tasks WHERE gift_pack_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
        (pack_id,),
    ) as cursor:
        row = await cursor.fetchone()
    return task_row_to_dict(row) if row else None


async def fetch_task(db: aiosqlite.Connection, task_id: str) -> Optional[Dict[str, Any]]:
    async with db.execute("SELECT * FROM claim_tasks WHERE task_id = ?", (task_id,)) as cursor:
        row = await cursor.fetchone()
    return task_row_to_dict(row) if row else None


# ── Writes ────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def immediate_transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Take the write lock up front so a read-then-write transition cannot interleave."""
    await db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        await db.rollback()
        raise
    await db.commit()


# ── Purge ─────────────────────────────────────────────────────────────────────

async def purge_stale_drafts(db: aiosqlite.Connection, retention_hours: int = DRAFT_RETENTION_HOURS) -> int:
    """Remove DRAFT packs older than the retention window. Returns number of packs deleted."""
    cutoff = (datetime.now(timezone.utc) - timedelta(hours=retention_hours)).isoformat()
    cursor = await db.execute(
        "DELETE FROM gift_packs WHERE status = 'DRAFT' AND created_at < ?", (cutoff,)
    )
    await db.commit()
    return cursor.rowcount
