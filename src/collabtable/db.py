"""SQLite database layer for the authoritative server dataset."""

import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from collabtable.config import config

SCHEMA = """
CREATE TABLE IF NOT EXISTS lists (
    id TEXT PRIMARY KEY NOT NULL,
    name TEXT NOT NULL,
    createdAt INTEGER NOT NULL,
    updatedAt INTEGER NOT NULL,
    isDeleted INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS fields (
    id TEXT PRIMARY KEY NOT NULL,
    listId TEXT NOT NULL REFERENCES lists(id) DEFERRABLE INITIALLY DEFERRED,
    name TEXT NOT NULL,
    fieldType TEXT NOT NULL DEFAULT 'TEXT',
    fieldOptions TEXT,
    "order" INTEGER NOT NULL DEFAULT 0,
    alignment TEXT NOT NULL DEFAULT 'start',
    createdAt INTEGER NOT NULL,
    updatedAt INTEGER NOT NULL,
    isDeleted INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY NOT NULL,
    listId TEXT NOT NULL REFERENCES lists(id) DEFERRABLE INITIALLY DEFERRED,
    createdAt INTEGER NOT NULL,
    updatedAt INTEGER NOT NULL,
    isDeleted INTEGER NOT NULL DEFAULT 0
);

-- No foreign keys: values may arrive before their item or field is visible.
CREATE TABLE IF NOT EXISTS item_values (
    id TEXT PRIMARY KEY NOT NULL,
    itemId TEXT NOT NULL,
    fieldId TEXT NOT NULL,
    value TEXT,
    updatedAt INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY NOT NULL,
    deviceIdOrigin TEXT,
    eventType TEXT NOT NULL,
    entityType TEXT NOT NULL,
    entityId TEXT,
    listId TEXT,
    createdAt INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_lists_updatedAt ON lists(updatedAt);
CREATE INDEX IF NOT EXISTS idx_fields_listId ON fields(listId);
CREATE INDEX IF NOT EXISTS idx_fields_updatedAt ON fields(updatedAt);
CREATE INDEX IF NOT EXISTS idx_items_listId ON items(listId);
CREATE INDEX IF NOT EXISTS idx_items_updatedAt ON items(updatedAt);
CREATE INDEX IF NOT EXISTS idx_item_values_itemId ON item_values(itemId);
CREATE INDEX IF NOT EXISTS idx_item_values_fieldId ON item_values(fieldId);
CREATE INDEX IF NOT EXISTS idx_item_values_updatedAt ON item_values(updatedAt);
CREATE INDEX IF NOT EXISTS idx_notifications_createdAt ON notifications(createdAt);
"""

# Tables in the order a sync applies them.
SYNC_TABLES = ("lists", "fields", "items", "item_values")


def db_path() -> Path:
    return config.db_path


async def init_db() -> None:
    """Initialize database and migrate if needed."""
    path = db_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path))
    try:
        conn.executescript(SCHEMA)

        # Databases created before column alignment existed
        existing_cols = [r[1] for r in conn.execute("PRAGMA table_info(fields)").fetchall()]
        if "alignment" not in existing_cols:
            conn.execute("ALTER TABLE fields ADD COLUMN alignment TEXT NOT NULL DEFAULT 'start'")

        conn.commit()
    finally:
        conn.close()


@asynccontextmanager
async def _aconn():
    """Async context manager for an aiosqlite connection.

    The connection runs in autocommit mode; callers that need atomicity open
    their own ``BEGIN IMMEDIATE`` transaction.
    """
    db = await aiosqlite.connect(str(db_path()), isolation_level=None)
    db.row_factory = aiosqlite.Row
    try:
        await db.execute("PRAGMA foreign_keys = ON")
        await db.execute("PRAGMA busy_timeout = 5000")
        yield db
    finally:
        await db.close()


def row_to_dict(row: aiosqlite.Row) -> dict:
    data = dict(row)
    if "isDeleted" in data:
        data["isDeleted"] = bool(data["isDeleted"])
    return data


async def fetch_all(sql: str, params: tuple = ()) -> list[dict]:
    async with _aconn() as db:
        cursor = await db.execute(sql, params)
        rows = await cursor.fetchall()
        return [row_to_dict(r) for r in rows]


async def get_lists() -> list[dict]:
    """Get all live lists, most recently updated first."""
    return await fetch_all("SELECT * FROM lists WHERE isDeleted = 0 ORDER BY updatedAt DESC")


async def get_list(list_id: str) -> dict | None:
    rows = await fetch_all("SELECT * FROM lists WHERE id = ? AND isDeleted = 0", (list_id,))
    return rows[0] if rows else None


async def get_fields_for_list(list_id: str) -> list[dict]:
    return await fetch_all(
        'SELECT * FROM fields WHERE listId = ? AND isDeleted = 0 ORDER BY "order" ASC',
        (list_id,),
    )


async def get_items_for_list(list_id: str) -> list[dict]:
    return await fetch_all(
        "SELECT * FROM items WHERE listId = ? AND isDeleted = 0 ORDER BY createdAt ASC",
        (list_id,),
    )


async def get_values_for_item(item_id: str) -> list[dict]:
    return await fetch_all("SELECT * FROM item_values WHERE itemId = ?", (item_id,))
