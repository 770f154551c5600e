"""SQLite access for the mutable credential backend."""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT UNIQUE NOT NULL,
    created_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS INTEGER))
);

CREATE TABLE IF NOT EXISTS credentials (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    webauthn_user_id TEXT NOT NULL,
    public_key TEXT NOT NULL,
    counter INTEGER NOT NULL DEFAULT 0,
    device_type TEXT NOT NULL DEFAULT 'singleDevice',
    backed_up INTEGER NOT NULL DEFAULT 0,
    transports TEXT,
    created_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS INTEGER)),
    last_used_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_credentials_user_id ON credentials(user_id);
"""


class SQLiteDatabase:
    """
    Embedded relational store.

    Every operation opens its own connection, so concurrent requests never
    share a cursor or wait on a process-wide lock.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _ensure_directory(self):
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    async def initialize(self):
        """Create tables and indexes if they do not exist."""
        self._ensure_directory()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode = WAL")
            await db.executescript(SCHEMA)
            await db.commit()
        logger.info(f"SQLite schema ready at {self.db_path}")

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    async def fetch_one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        async with self.connect() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        async with self.connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def execute(self, query: str, params: tuple = ()) -> int:
        """Run a write statement in its own transaction; returns the affected row count."""
        async with self.connect() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount
