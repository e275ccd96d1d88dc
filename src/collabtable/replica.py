"""Client-side replica of the shared dataset.

Rows are never hard deleted: local deletes set ``isDeleted`` and bump
``updatedAt`` so the tombstone reaches the server on the next sync.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import aiosqlite

from collabtable.clock import Clock, default_clock
from collabtable.field_types import resolve_field_type, validate_value
from collabtable.models import CollabList, Field, Item, ItemValue, SyncRequest, SyncResponse

logger = logging.getLogger("collabtable.replica")

SCHEMA = """
CREATE TABLE IF NOT EXISTS lists (
    id TEXT PRIMARY KEY NOT NULL,
    name TEXT NOT NULL,
    createdAt INTEGER NOT NULL,
    updatedAt INTEGER NOT NULL,
    isDeleted INTEGER NOT NULL DEFAULT 0,
    orderIndex INTEGER,
    localSeq INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS fields (
    id TEXT PRIMARY KEY NOT NULL,
    listId TEXT NOT NULL REFERENCES lists(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    fieldType TEXT NOT NULL DEFAULT 'TEXT',
    fieldOptions TEXT NOT NULL DEFAULT '',
    "order" INTEGER NOT NULL DEFAULT 0,
    alignment TEXT NOT NULL DEFAULT 'start',
    createdAt INTEGER NOT NULL,
    updatedAt INTEGER NOT NULL,
    isDeleted INTEGER NOT NULL DEFAULT 0,
    localSeq INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY NOT NULL,
    listId TEXT NOT NULL REFERENCES lists(id) ON DELETE CASCADE,
    createdAt INTEGER NOT NULL,
    updatedAt INTEGER NOT NULL,
    isDeleted INTEGER NOT NULL DEFAULT 0,
    localSeq INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS item_values (
    id TEXT PRIMARY KEY NOT NULL,
    itemId TEXT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
    fieldId TEXT NOT NULL REFERENCES fields(id) ON DELETE CASCADE,
    value TEXT NOT NULL DEFAULT '',
    updatedAt INTEGER NOT NULL,
    localSeq INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY NOT NULL,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_fields_listId ON fields(listId);
CREATE INDEX IF NOT EXISTS idx_items_listId ON items(listId);
CREATE INDEX IF NOT EXISTS idx_item_values_itemId ON item_values(itemId);
CREATE INDEX IF NOT EXISTS idx_item_values_fieldId ON item_values(fieldId);
"""

# Server rows replace local ones, except rows carrying a local edit newer
# than the last upload, which only a strictly newer server write may replace.
APPLY_LIST = """
INSERT INTO lists (id, name, createdAt, updatedAt, isDeleted) VALUES (?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    name = excluded.name, updatedAt = excluded.updatedAt, isDeleted = excluded.isDeleted
WHERE lists.localSeq <= ? OR excluded.updatedAt > lists.updatedAt
"""

APPLY_FIELD = """
INSERT INTO fields (id, listId, name, fieldType, fieldOptions, "order", alignment, createdAt, updatedAt, isDeleted)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    name = excluded.name, fieldType = excluded.fieldType, fieldOptions = excluded.fieldOptions,
    "order" = excluded."order", alignment = excluded.alignment,
    updatedAt = excluded.updatedAt, isDeleted = excluded.isDeleted
WHERE fields.localSeq <= ? OR excluded.updatedAt > fields.updatedAt
"""

APPLY_ITEM = """
INSERT INTO items (id, listId, createdAt, updatedAt, isDeleted) VALUES (?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET updatedAt = excluded.updatedAt, isDeleted = excluded.isDeleted
WHERE items.localSeq <= ? OR excluded.updatedAt > items.updatedAt
"""

APPLY_ITEM_VALUE = """
INSERT INTO item_values (id, itemId, fieldId, value, updatedAt) VALUES (?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET value = excluded.value, updatedAt = excluded.updatedAt
WHERE item_values.localSeq <= ? OR excluded.updatedAt > item_values.updatedAt
"""

SET_LOCAL_VALUE = """
INSERT INTO item_values (id, itemId, fieldId, value, updatedAt, localSeq) VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    value = excluded.value, updatedAt = excluded.updatedAt, localSeq = excluded.localSeq
"""

SYNCED_TABLES = ("lists", "fields", "items", "item_values")

# Highest local change sequence number already accepted by the server.
SENT_SEQ_KEY = "last_sent_local_seq"


@dataclass
class ApplyResult:
    lists: int = 0
    fields: int = 0
    items: int = 0
    values: int = 0
    dropped_fields: int = 0
    dropped_items: int = 0
    dropped_values: int = 0

    @property
    def dropped(self) -> int:
        return self.dropped_fields + self.dropped_items + self.dropped_values


def _row(row: aiosqlite.Row) -> dict:
    data = dict(row)
    if "isDeleted" in data:
        data["isDeleted"] = bool(data["isDeleted"])
    return data


class Replica:
    """Durable local store of lists, fields, items and values.

    One aiosqlite connection is shared by every caller; a lock serialises
    transactions so a sync apply never interleaves with a local edit.
    """

    def __init__(self, path: Path | str, clock: Clock | None = None):
        self.path = Path(path)
        self._clock = clock or default_clock
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._listeners: list[Callable[[], None]] = []
        self._seq = 0

    @classmethod
    async def open(cls, path: Path | str, clock: Clock | None = None) -> "Replica":
        replica = cls(path, clock)
        await replica.connect()
        return replica

    async def connect(self):
        if self.path.parent:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.path), isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys = ON")
        await self._conn.executescript(SCHEMA)
        for table in SYNCED_TABLES:
            cursor = await self._conn.execute(f"PRAGMA table_info({table})")
            columns = {row["name"] for row in await cursor.fetchall()}
            if "localSeq" not in columns:
                await self._conn.execute(
                    f"ALTER TABLE {table} ADD COLUMN localSeq INTEGER NOT NULL DEFAULT 0"
                )

        self._seq = await self._sent_seq()
        for table in SYNCED_TABLES:
            cursor = await self._conn.execute(f"SELECT MAX(localSeq) FROM {table}")
            self._seq = max(self._seq, (await cursor.fetchone())[0] or 0)

    async def close(self):
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Replica is not open")
        return self._conn

    def add_change_listener(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` after every committed local edit that needs syncing."""
        self._listeners.append(listener)

    def remove_change_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @asynccontextmanager
    async def _transaction(self, notify: bool = True):
        async with self._lock:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                await self.conn.execute("ROLLBACK")
                raise
            else:
                await self.conn.execute("COMMIT")
        if notify:
            for listener in list(self._listeners):
                listener()

    async def _fetch(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = await self.conn.execute(sql, params)
        return [_row(r) for r in await cursor.fetchall()]

    async def _ids(self, table: str) -> set[str]:
        cursor = await self.conn.execute(f"SELECT id FROM {table}")
        return {r[0] for r in await cursor.fetchall()}

    def _next_seq(self) -> int:
        """Sequence number for a local edit. Call while holding the lock."""
        self._seq += 1
        return self._seq

    async def _sent_seq(self) -> int:
        raw = await self.get_setting(SENT_SEQ_KEY)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    # --- Settings ---

    async def get_setting(self, key: str, default: str | None = None) -> str | None:
        cursor = await self.conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row else default

    async def set_setting(self, key: str, value: str) -> None:
        async with self._lock:
            await self.conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value)
            )

    async def delete_setting(self, *keys: str) -> None:
        async with self._lock:
            for key in keys:
                await self.conn.execute("DELETE FROM settings WHERE key = ?", (key,))

    async def get_device_id(self) -> str:
        """Get or create a persistent id for this replica."""
        device_id = await self.get_setting("device_id")
        if device_id is None:
            device_id = uuid.uuid4().hex[:12]
            await self.set_setting("device_id", device_id)
        return device_id

    # --- Reads ---

    async def get_lists(self) -> list[CollabList]:
        rows = await self._fetch(
            "SELECT * FROM lists WHERE isDeleted = 0 ORDER BY orderIndex IS NULL, orderIndex, createdAt"
        )
        return [CollabList.model_validate(r) for r in rows]

    async def get_list(self, list_id: str) -> CollabList | None:
        rows = await self._fetch("SELECT * FROM lists WHERE id = ?", (list_id,))
        return CollabList.model_validate(rows[0]) if rows else None

    async def get_fields(self, list_id: str) -> list[Field]:
        rows = await self._fetch(
            'SELECT * FROM fields WHERE listId = ? AND isDeleted = 0 ORDER BY "order"', (list_id,)
        )
        return [Field.model_validate(r) for r in rows]

    async def get_items(self, list_id: str) -> list[Item]:
        # Creation order keeps rows stable while cells are edited.
        rows = await self._fetch(
            "SELECT * FROM items WHERE listId = ? AND isDeleted = 0 ORDER BY createdAt ASC", (list_id,)
        )
        return [Item.model_validate(r) for r in rows]

    async def get_item(self, item_id: str) -> Item | None:
        rows = await self._fetch("SELECT * FROM items WHERE id = ?", (item_id,))
        return Item.model_validate(rows[0]) if rows else None

    async def get_field(self, field_id: str) -> Field | None:
        rows = await self._fetch("SELECT * FROM fields WHERE id = ?", (field_id,))
        return Field.model_validate(rows[0]) if rows else None

    async def get_values(self, item_id: str) -> list[ItemValue]:
        rows = await self._fetch("SELECT * FROM item_values WHERE itemId = ?", (item_id,))
        return [ItemValue.model_validate(r) for r in rows]

    # --- Local mutations ---

    async def create_list(self, name: str) -> CollabList:
        now = self._clock.now()
        lst = CollabList(id=str(uuid.uuid4()), name=name, created_at=now, updated_at=now)
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT INTO lists (id, name, createdAt, updatedAt, isDeleted, localSeq) VALUES (?, ?, ?, ?, 0, ?)",
                (lst.id, lst.name, now, now, self._next_seq()),
            )
        return lst

    async def rename_list(self, list_id: str, name: str) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE lists SET name = ?, updatedAt = ?, localSeq = ? WHERE id = ?",
                (name, self._clock.now(), self._next_seq(), list_id),
            )

    async def delete_list(self, list_id: str) -> None:
        """Soft-delete a list together with its fields and items."""
        now = self._clock.now()
        async with self._transaction() as conn:
            seq = self._next_seq()
            await conn.execute(
                "UPDATE lists SET isDeleted = 1, updatedAt = ?, localSeq = ? WHERE id = ?", (now, seq, list_id)
            )
            await conn.execute(
                "UPDATE fields SET isDeleted = 1, updatedAt = ?, localSeq = ? WHERE listId = ? AND isDeleted = 0",
                (now, seq, list_id),
            )
            await conn.execute(
                "UPDATE items SET isDeleted = 1, updatedAt = ?, localSeq = ? WHERE listId = ? AND isDeleted = 0",
                (now, seq, list_id),
            )

    async def set_list_order(self, list_ids: list[str]) -> None:
        """Store a manual list ordering. Local only, never synced."""
        async with self._transaction(notify=False) as conn:
            for index, list_id in enumerate(list_ids):
                await conn.execute("UPDATE lists SET orderIndex = ? WHERE id = ?", (index, list_id))

    async def add_field(
        self,
        list_id: str,
        name: str,
        field_type: str = "TEXT",
        field_options: str = "",
        alignment: str = "start",
    ) -> Field:
        now = self._clock.now()
        async with self._transaction() as conn:
            cursor = await conn.execute('SELECT MAX("order") FROM fields WHERE listId = ?', (list_id,))
            current = (await cursor.fetchone())[0]
            field = Field(
                id=str(uuid.uuid4()),
                list_id=list_id,
                name=name,
                field_type=resolve_field_type(field_type).value,
                field_options=field_options,
                order=0 if current is None else current + 1,
                alignment=alignment,
                created_at=now,
                updated_at=now,
            )
            await conn.execute(
                """
                INSERT INTO fields
                    (id, listId, name, fieldType, fieldOptions, "order", alignment, createdAt, updatedAt, localSeq)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (field.id, list_id, name, field.field_type, field_options, field.order,
                 alignment, now, now, self._next_seq()),
            )
        return field

    async def update_field(
        self,
        field_id: str,
        name: str | None = None,
        field_type: str | None = None,
        field_options: str | None = None,
        alignment: str | None = None,
    ) -> None:
        changes = {}
        if name is not None:
            changes["name"] = name
        if field_type is not None:
            changes["fieldType"] = resolve_field_type(field_type).value
        if field_options is not None:
            changes["fieldOptions"] = field_options
        if alignment is not None:
            changes["alignment"] = alignment
        changes["updatedAt"] = self._clock.now()
        async with self._transaction() as conn:
            changes["localSeq"] = self._next_seq()
            assignments = ", ".join(f"{column} = ?" for column in changes)
            await conn.execute(
                f"UPDATE fields SET {assignments} WHERE id = ?", (*changes.values(), field_id)
            )

    async def reorder_fields(self, field_ids: list[str]) -> None:
        now = self._clock.now()
        async with self._transaction() as conn:
            seq = self._next_seq()
            for index, field_id in enumerate(field_ids):
                await conn.execute(
                    'UPDATE fields SET "order" = ?, updatedAt = ?, localSeq = ? WHERE id = ?',
                    (index, now, seq, field_id),
                )

    async def delete_field(self, field_id: str) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE fields SET isDeleted = 1, updatedAt = ?, localSeq = ? WHERE id = ?",
                (self._clock.now(), self._next_seq(), field_id),
            )

    async def add_item(self, list_id: str) -> Item:
        now = self._clock.now()
        item = Item(id=str(uuid.uuid4()), list_id=list_id, created_at=now, updated_at=now)
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT INTO items (id, listId, createdAt, updatedAt, isDeleted, localSeq) VALUES (?, ?, ?, ?, 0, ?)",
                (item.id, list_id, now, now, self._next_seq()),
            )
        return item

    async def delete_item(self, item_id: str) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE items SET isDeleted = 1, updatedAt = ?, localSeq = ? WHERE id = ?",
                (self._clock.now(), self._next_seq(), item_id),
            )

    async def set_value(self, item_id: str, field_id: str, value: str, validate: bool = False) -> ItemValue:
        """Write a cell, reusing the row already stored for this (item, field).

        Sync is keyed by value ``id``; minting a new id on every edit would
        leave several rows for the same cell on every replica.
        """
        if validate:
            field = await self.get_field(field_id)
            if field is not None and not validate_value(field.field_type, field.field_options, value):
                raise ValueError(f"Invalid value {value!r} for {field.field_type} field {field.name!r}")

        now = self._clock.now()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT id FROM item_values WHERE itemId = ? AND fieldId = ? ORDER BY updatedAt DESC LIMIT 1",
                (item_id, field_id),
            )
            row = await cursor.fetchone()
            value_id = row["id"] if row else str(uuid.uuid4())
            await conn.execute(SET_LOCAL_VALUE, (value_id, item_id, field_id, value, now, self._next_seq()))
        return ItemValue(id=value_id, item_id=item_id, field_id=field_id, value=value, updated_at=now)

    # --- Sync ---

    async def _collect(self, where: str, params: tuple, since: int) -> SyncRequest:
        lists = await self._fetch(f"SELECT * FROM lists WHERE {where}", params)
        fields = await self._fetch(f"SELECT * FROM fields WHERE {where}", params)
        items = await self._fetch(f"SELECT * FROM items WHERE {where}", params)
        values = await self._fetch(f"SELECT * FROM item_values WHERE {where}", params)
        return SyncRequest(
            last_sync_timestamp=since,
            lists=[CollabList.model_validate(r) for r in lists],
            fields=[Field.model_validate(r) for r in fields],
            items=[Item.model_validate(r) for r in items],
            item_values=[ItemValue.model_validate(r) for r in values],
        )

    async def collect_changes(self, since: int) -> SyncRequest:
        """Every row, tombstones included, with ``updatedAt >= since``."""
        async with self._lock:
            return await self._collect("updatedAt >= ?", (since,), since)

    async def collect_pending(self, since: int) -> tuple[SyncRequest, int]:
        """Rows changed since ``since`` plus every local edit the server has not accepted yet.

        Returns the request and the local sequence number it covers; pass that
        number to :meth:`apply_response` and store it once the cycle commits.
        """
        async with self._lock:
            sent_seq = self._seq
            request = await self._collect(
                "updatedAt >= ? OR localSeq > ?", (since, await self._sent_seq()), since
            )
        return request, sent_seq

    async def apply_response(self, response: SyncResponse, sent_seq: int | None = None) -> ApplyResult:
        """Apply server rows in list, field, item, value order in one transaction.

        Children whose parents are not present after the earlier tables were
        applied are dropped and counted instead of failing the apply. Rows
        edited locally after ``sent_seq`` (default: the last accepted upload)
        keep their local content unless the server row is strictly newer.
        """
        if sent_seq is None:
            sent_seq = await self._sent_seq()
        result = ApplyResult()
        async with self._transaction(notify=False) as conn:
            for lst in response.lists:
                await conn.execute(
                    APPLY_LIST,
                    (lst.id, lst.name, lst.created_at, lst.updated_at, int(lst.is_deleted), sent_seq),
                )
            result.lists = len(response.lists)

            list_ids = await self._ids("lists")
            fields = [f for f in response.fields if f.list_id in list_ids]
            for f in fields:
                await conn.execute(
                    APPLY_FIELD,
                    (f.id, f.list_id, f.name, f.field_type, f.field_options or "", f.order,
                     f.alignment, f.created_at, f.updated_at, int(f.is_deleted), sent_seq),
                )
            result.fields = len(fields)
            result.dropped_fields = len(response.fields) - len(fields)

            items = [i for i in response.items if i.list_id in list_ids]
            for i in items:
                await conn.execute(
                    APPLY_ITEM, (i.id, i.list_id, i.created_at, i.updated_at, int(i.is_deleted), sent_seq)
                )
            result.items = len(items)
            result.dropped_items = len(response.items) - len(items)

            item_ids = await self._ids("items")
            field_ids = await self._ids("fields")
            values = [
                v for v in response.item_values
                if v.item_id in item_ids and v.field_id in field_ids
            ]
            for v in values:
                await conn.execute(
                    APPLY_ITEM_VALUE, (v.id, v.item_id, v.field_id, v.value or "", v.updated_at, sent_seq)
                )
            result.values = len(values)
            result.dropped_values = len(response.item_values) - len(values)

        if result.dropped_fields:
            logger.warning(f"Dropped {result.dropped_fields} field(s) with missing parent list")
        if result.dropped_items:
            logger.warning(f"Dropped {result.dropped_items} item(s) with missing parent list")
        if result.dropped_values:
            logger.warning(f"Dropped {result.dropped_values} item value(s) with missing item or field")
        return result
