"""
SQLite persistence for marketplace credentials and listing drafts.

Each call opens its own connection; tables are created on first connect.
Writes that race (token refresh, publish) are compare-and-swap updates and
report through their return value whether they won.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone

import aiosqlite

from photolister.models import Credential, DraftStatus, ListingDraft
from photolister.services import settings

CLAIM_TTL_SECONDS = 10 * 60


async def _get_db() -> aiosqlite.Connection:
    settings.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(settings.DB_PATH))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("""
        CREATE TABLE IF NOT EXISTS credentials (
            owner_id TEXT PRIMARY KEY,
            access_token TEXT,
            refresh_token TEXT,
            expires_at REAL,
            updated_at TEXT
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS listings (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL,
            price TEXT NOT NULL DEFAULT '0.00',
            condition TEXT NOT NULL,
            condition_description TEXT,
            category TEXT,
            category_id TEXT,
            item_specifics TEXT,
            images TEXT,
            external_id TEXT,
            sku TEXT,
            status TEXT DEFAULT 'draft',
            created_at TEXT,
            updated_at TEXT
        )
    """)
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_listing_owner ON listings(owner_id)"
    )
    await db.commit()
    return db


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Credentials ──────────────────────────────────────────────────

async def get_credential(owner_id: str) -> Credential | None:
    db = await _get_db()
    try:
        cursor = await db.execute(
            "SELECT owner_id, access_token, refresh_token, expires_at FROM credentials WHERE owner_id = ?",
            (owner_id,),
        )
        row = await cursor.fetchone()
        return Credential(**dict(row)) if row else None
    finally:
        await db.close()


async def save_credential(credential: Credential) -> Credential:
    """Create or overwrite the credential (used by the OAuth code exchange)."""
    db = await _get_db()
    try:
        await db.execute(
            """INSERT INTO credentials (owner_id, access_token, refresh_token, expires_at, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(owner_id) DO UPDATE SET
                   access_token = excluded.access_token,
                   refresh_token = excluded.refresh_token,
                   expires_at = excluded.expires_at,
                   updated_at = excluded.updated_at""",
            (
                credential.owner_id,
                credential.access_token,
                credential.refresh_token,
                credential.expires_at,
                _now(),
            ),
        )
        await db.commit()
        return credential
    finally:
        await db.close()


async def swap_refreshed_tokens(
    owner_id: str,
    expected_expires_at: float | None,
    access_token: str,
    refresh_token: str,
    expires_at: float,
) -> bool:
    """
    Store refreshed tokens only if the stored expiry is still the one the caller
    read and the new expiry is strictly later. Returns False when another writer
    got there first.
    """
    db = await _get_db()
    try:
        cursor = await db.execute(
            """UPDATE credentials
               SET access_token = ?, refresh_token = ?, expires_at = ?, updated_at = ?
               WHERE owner_id = ?
                 AND expires_at IS ?
                 AND (expires_at IS NULL OR expires_at < ?)""",
            (
                access_token,
                refresh_token,
                expires_at,
                _now(),
                owner_id,
                expected_expires_at,
                expires_at,
            ),
        )
        await db.commit()
        return cursor.rowcount > 0
    finally:
        await db.close()


async def delete_credential(owner_id: str) -> bool:
    db = await _get_db()
    try:
        cursor = await db.execute("DELETE FROM credentials WHERE owner_id = ?", (owner_id,))
        await db.commit()
        return cursor.rowcount > 0
    finally:
        await db.close()


# ── Listings ─────────────────────────────────────────────────────

def _row_to_listing(row: aiosqlite.Row) -> ListingDraft:
    data = dict(row)
    data["item_specifics"] = json.loads(data.get("item_specifics") or "{}")
    data["images"] = json.loads(data.get("images") or "[]")
    data["condition_description"] = data.get("condition_description") or ""
    data["category"] = data.get("category") or ""
    return ListingDraft(**data)


async def create_listing(data: dict) -> ListingDraft:
    db = await _get_db()
    try:
        listing_id = data.get("id") or str(uuid.uuid4())[:8]
        now = _now()
        await db.execute(
            """INSERT INTO listings
               (id, owner_id, title, description, price, condition,
                condition_description, category, category_id, item_specifics,
                images, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                listing_id,
                data["owner_id"],
                data.get("title", ""),
                data.get("description", ""),
                data.get("price", "0.00"),
                data.get("condition", ""),
                data.get("condition_description", ""),
                data.get("category", ""),
                data.get("category_id"),
                json.dumps(data.get("item_specifics") or {}),
                json.dumps(data.get("images") or []),
                DraftStatus.DRAFT.value,
                now,
                now,
            ),
        )
        await db.commit()
    finally:
        await db.close()
    return await get_listing(listing_id)


async def get_listing(listing_id: str) -> ListingDraft | None:
    db = await _get_db()
    try:
        cursor = await db.execute("SELECT * FROM listings WHERE id = ?", (listing_id,))
        row = await cursor.fetchone()
        return _row_to_listing(row) if row else None
    finally:
        await db.close()


async def list_listings(owner_id: str, limit: int = 100, offset: int = 0) -> list[ListingDraft]:
    db = await _get_db()
    try:
        cursor = await db.execute(
            "SELECT * FROM listings WHERE owner_id = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (owner_id, limit, offset),
        )
        rows = await cursor.fetchall()
        return [_row_to_listing(r) for r in rows]
    finally:
        await db.close()


async def claim_for_publish(listing_id: str, stale_after: float = CLAIM_TTL_SECONDS) -> bool:
    """
    Move a draft to ``publishing`` so no other worker submits it. A claim left
    behind by a crashed worker can be taken over once ``stale_after`` seconds old.
    """
    cutoff = (datetime.now(timezone.utc) - timedelta(seconds=stale_after)).isoformat()
    db = await _get_db()
    try:
        cursor = await db.execute(
            """UPDATE listings
               SET status = ?, updated_at = ?
               WHERE id = ?
                 AND (status = ? OR (status = ? AND updated_at < ?))""",
            (
                DraftStatus.PUBLISHING.value,
                _now(),
                listing_id,
                DraftStatus.DRAFT.value,
                DraftStatus.PUBLISHING.value,
                cutoff,
            ),
        )
        await db.commit()
        return cursor.rowcount > 0
    finally:
        await db.close()


async def release_claim(listing_id: str) -> bool:
    """Return a claimed listing to ``draft`` after a failed submission."""
    db = await _get_db()
    try:
        cursor = await db.execute(
            "UPDATE listings SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (DraftStatus.DRAFT.value, _now(), listing_id, DraftStatus.PUBLISHING.value),
        )
        await db.commit()
        return cursor.rowcount > 0
    finally:
        await db.close()


async def mark_pushed(listing_id: str, external_id: str, sku: str) -> bool:
    """Flip a claimed listing to pushed. Only succeeds while the claim is held."""
    db = await _get_db()
    try:
        cursor = await db.execute(
            """UPDATE listings
               SET status = ?, external_id = ?, sku = ?, updated_at = ?
               WHERE id = ? AND status = ?""",
            (
                DraftStatus.PUSHED.value,
                external_id,
                sku,
                _now(),
                listing_id,
                DraftStatus.PUBLISHING.value,
            ),
        )
        await db.commit()
        return cursor.rowcount > 0
    finally:
        await db.close()
