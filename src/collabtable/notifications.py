"""Change events recorded by the server and polled by other devices."""

import logging
import uuid

import aiosqlite

from collabtable import db
from collabtable.clock import now_ms

logger = logging.getLogger("collabtable.notifications")

POLL_LIMIT = 500
DAY_MS = 24 * 60 * 60 * 1000


async def enqueue_notification(
    conn: aiosqlite.Connection,
    device_id_origin: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    list_id: str | None = None,
    created_at: int | None = None,
) -> str:
    """Insert an event on ``conn`` so it commits or rolls back with the caller."""
    event_id = str(uuid.uuid4())
    await conn.execute(
        """INSERT INTO notifications (id, deviceIdOrigin, eventType, entityType, entityId, listId, createdAt)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (event_id, device_id_origin, event_type, entity_type, entity_id, list_id,
         created_at if created_at is not None else now_ms()),
    )
    return event_id


async def poll_notifications(since: int, device_id: str | None = None) -> list[dict]:
    """Events newer than ``since``, oldest first, excluding those the caller caused."""
    sql = "SELECT * FROM notifications WHERE createdAt > ?"
    params: list = [since if since > 0 else 0]
    if device_id:
        sql += " AND (deviceIdOrigin IS NULL OR deviceIdOrigin <> ?)"
        params.append(device_id)
    sql += " ORDER BY createdAt ASC, rowid ASC LIMIT ?"
    params.append(POLL_LIMIT)
    return await db.fetch_all(sql, tuple(params))


async def prune_notifications(retention_days: int) -> int:
    """Delete events older than the retention window. Returns rows deleted."""
    cutoff = now_ms() - retention_days * DAY_MS
    async with db._aconn() as conn:
        cursor = await conn.execute("DELETE FROM notifications WHERE createdAt < ?", (cutoff,))
        return cursor.rowcount


async def poll_page(since: int, device_id: str | None = None) -> tuple[list[dict], int]:
    """One poll's events plus the ``since`` the caller should send next.

    A short page means the caller is caught up and gets the server clock. A
    full page hands back the newest delivered ``createdAt`` instead, holding
    back trailing events from that millisecond so the next ``createdAt >
    since`` query still returns the ones that did not fit.
    """
    now = now_ms()
    rows = await poll_notifications(since, device_id)
    if len(rows) < POLL_LIMIT:
        return rows, now

    last = rows[-1]["createdAt"]
    kept = [row for row in rows if row["createdAt"] < last]
    if not kept:
        logger.warning(f"More than {POLL_LIMIT} notifications at {last}, some will be skipped")
        return rows, last
    return kept, kept[-1]["createdAt"]
