"""Server merge engine: apply a client's rows, then hand back the delta.

Writes are last-write-wins keyed by ``id``. An incoming row overwrites the
stored one without comparing ``updatedAt`` unless the engine is built with
``reject_stale_writes=True``.
"""

import logging
import sqlite3
from collections import Counter

import aiosqlite

from collabtable import db
from collabtable.clock import Clock, default_clock
from collabtable.errors import MergeError
from collabtable.models import CollabList, Field, Item, ItemValue, SyncRequest, SyncResponse
from collabtable.notifications import enqueue_notification

logger = logging.getLogger("collabtable.merge")

UPSERT_LIST = """
INSERT INTO lists (id, name, createdAt, updatedAt, isDeleted)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    name = excluded.name,
    updatedAt = excluded.updatedAt,
    isDeleted = excluded.isDeleted
"""

UPSERT_FIELD = """
INSERT INTO fields (id, listId, name, fieldType, fieldOptions, "order", alignment, createdAt, updatedAt, isDeleted)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    name = excluded.name,
    fieldType = excluded.fieldType,
    fieldOptions = excluded.fieldOptions,
    "order" = excluded."order",
    alignment = excluded.alignment,
    updatedAt = excluded.updatedAt,
    isDeleted = excluded.isDeleted
"""

UPSERT_ITEM = """
INSERT INTO items (id, listId, createdAt, updatedAt, isDeleted)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    updatedAt = excluded.updatedAt,
    isDeleted = excluded.isDeleted
"""

UPSERT_ITEM_VALUE = """
INSERT INTO item_values (id, itemId, fieldId, value, updatedAt)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    value = excluded.value,
    updatedAt = excluded.updatedAt
"""


def _stale_guard(sql: str, table: str) -> str:
    return sql.rstrip() + f"\nWHERE excluded.updatedAt >= {table}.updatedAt\n"


class SyncStats:
    """Rows received from and sent to clients since the last report."""

    def __init__(self):
        self._reset()

    def _reset(self):
        self.total_syncs = 0
        self.received: Counter = Counter()
        self.sent: Counter = Counter()

    def record(self, request: SyncRequest, response: SyncResponse):
        self.total_syncs += 1
        self.received.update(dict(zip(db.SYNC_TABLES, request.counts())))
        self.sent.update(dict(zip(db.SYNC_TABLES, response.counts())))

    def report(self) -> str | None:
        """Format and reset the counters. Returns None when nothing happened."""
        if self.total_syncs == 0:
            return None
        line = (
            f"{self.total_syncs} syncs; received "
            + ", ".join(f"{self.received[t]} {t}" for t in db.SYNC_TABLES)
            + "; sent "
            + ", ".join(f"{self.sent[t]} {t}" for t in db.SYNC_TABLES)
        )
        self._reset()
        return line


class MergeEngine:
    def __init__(self, clock: Clock | None = None, reject_stale_writes: bool = False):
        self._clock = clock or default_clock
        self.reject_stale_writes = reject_stale_writes
        self.stats = SyncStats()

        self._upsert_list = UPSERT_LIST
        self._upsert_field = UPSERT_FIELD
        self._upsert_item = UPSERT_ITEM
        self._upsert_value = UPSERT_ITEM_VALUE
        if reject_stale_writes:
            self._upsert_list = _stale_guard(UPSERT_LIST, "lists")
            self._upsert_field = _stale_guard(UPSERT_FIELD, "fields")
            self._upsert_item = _stale_guard(UPSERT_ITEM, "items")
            self._upsert_value = _stale_guard(UPSERT_ITEM_VALUE, "item_values")

    async def apply_and_diff(self, request: SyncRequest, device_id: str | None = None) -> SyncResponse:
        """Upsert every incoming row in one transaction, then read the delta.

        Raises MergeError when the transaction had to be rolled back; nothing
        from the request is persisted in that case.
        """
        if not request.is_empty():
            n_lists, n_fields, n_items, n_values = request.counts()
            logger.info(
                f"Received: {n_lists} lists, {n_fields} fields, {n_items} items, {n_values} values"
            )

        async with db._aconn() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                await self._apply(conn, request, device_id)
                await conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                logger.error(f"Sync transaction rolled back: {e}")
                raise MergeError(f"Sync failed: {e}") from e

            server_timestamp = self._clock.now()
            response = await self._read_delta(conn, request.last_sync_timestamp, server_timestamp)

        self.stats.record(request, response)
        n_lists, n_fields, n_items, n_values = response.counts()
        if n_lists or n_fields or n_items or n_values:
            logger.info(
                f"Sending: {n_lists} lists, {n_fields} fields, {n_items} items, {n_values} values"
            )
        return response

    async def _apply(self, conn: aiosqlite.Connection, request: SyncRequest, device_id: str | None):
        list_events: dict[str, str] = {}
        for lst in request.lists:
            cursor = await conn.execute("SELECT 1 FROM lists WHERE id = ?", (lst.id,))
            existed = await cursor.fetchone() is not None
            await conn.execute(
                self._upsert_list,
                (lst.id, lst.name, lst.created_at, lst.updated_at, int(lst.is_deleted)),
            )
            if lst.is_deleted:
                list_events[lst.id] = "deleted"
            else:
                list_events[lst.id] = "updated" if existed else "created"
            logger.debug(f"  List {lst.id} \"{lst.name}\" (updated: {lst.updated_at}, deleted: {lst.is_deleted})")

        # list id -> (entity type, entity id) of the first content change seen
        content_changes: dict[str, tuple[str, str]] = {}

        for field in request.fields:
            await conn.execute(
                self._upsert_field,
                (field.id, field.list_id, field.name, field.field_type, field.field_options,
                 field.order, field.alignment, field.created_at, field.updated_at,
                 int(field.is_deleted)),
            )
            content_changes.setdefault(field.list_id, ("field", field.id))

        for item in request.items:
            await conn.execute(
                self._upsert_item,
                (item.id, item.list_id, item.created_at, item.updated_at, int(item.is_deleted)),
            )
            content_changes.setdefault(item.list_id, ("item", item.id))

        for value in request.item_values:
            await conn.execute(
                self._upsert_value,
                (value.id, value.item_id, value.field_id, value.value, value.updated_at),
            )
            cursor = await conn.execute("SELECT listId FROM items WHERE id = ?", (value.item_id,))
            row = await cursor.fetchone()
            if row is not None:
                content_changes.setdefault(row["listId"], ("value", value.id))

        created_at = self._clock.now()
        for list_id, event_type in list_events.items():
            await enqueue_notification(conn, device_id, event_type, "list", list_id, list_id, created_at)
        for list_id, (entity_type, entity_id) in content_changes.items():
            if list_id in list_events:
                continue
            await enqueue_notification(
                conn, device_id, "listContentUpdated", entity_type, entity_id, list_id, created_at
            )

    async def _read_delta(self, conn: aiosqlite.Connection, since: int, server_timestamp: int) -> SyncResponse:
        if since == 0:
            # Full hydration: a fresh client has nothing to reconcile tombstones against.
            lists = await self._select(conn, "SELECT * FROM lists WHERE isDeleted = 0")
            fields = await self._select(conn, "SELECT * FROM fields WHERE isDeleted = 0")
            items = await self._select(conn, "SELECT * FROM items WHERE isDeleted = 0")
            values = await self._select(conn, "SELECT * FROM item_values")
        else:
            lists = await self._select(conn, "SELECT * FROM lists WHERE updatedAt >= ?", (since,))
            fields = await self._select(conn, "SELECT * FROM fields WHERE updatedAt >= ?", (since,))
            items = await self._select(conn, "SELECT * FROM items WHERE updatedAt >= ?", (since,))
            values = await self._select(conn, "SELECT * FROM item_values WHERE updatedAt >= ?", (since,))

        return SyncResponse(
            lists=[CollabList.model_validate(r) for r in lists],
            fields=[Field.model_validate(r) for r in fields],
            items=[Item.model_validate(r) for r in items],
            item_values=[ItemValue.model_validate(r) for r in values],
            server_timestamp=server_timestamp,
        )

    @staticmethod
    async def _select(conn: aiosqlite.Connection, sql: str, params: tuple = ()) -> list[dict]:
        cursor = await conn.execute(sql, params)
        return [db.row_to_dict(r) for r in await cursor.fetchall()]
