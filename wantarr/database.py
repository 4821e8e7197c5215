"""
SQLite persistence layer.

One ``Store`` owns a single aiosqlite connection. Every statement goes through
it, so concurrent coroutines are serialized by an ``asyncio.Lock``; a
``transaction()`` holds that lock from ``BEGIN IMMEDIATE`` to commit/rollback.

Change notifications registered inside a transaction are handed to the
publisher only once the transaction has committed, and are discarded when it
rolls back.
"""
import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, Optional, Protocol, Sequence

import aiosqlite

logger = logging.getLogger(__name__)

Publisher = Callable[[str, str], None]

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        media_server_id TEXT UNIQUE,
        messaging_key TEXT NOT NULL,
        messaging_id TEXT NOT NULL,
        approval_message_id TEXT,
        last_message_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(messaging_key, messaging_id)
    )
    """,
    # Absent season/episode numbers are stored as -1 so the identity key can be
    # a plain unique constraint.
    """
    CREATE TABLE IF NOT EXISTS medias (
        id TEXT PRIMARY KEY,
        external_id TEXT NOT NULL,
        type TEXT NOT NULL,
        title TEXT NOT NULL,
        year INTEGER,
        season_number INTEGER NOT NULL DEFAULT -1,
        episode_number INTEGER NOT NULL DEFAULT -1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(external_id, type, season_number, episode_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS requests (
        media_id TEXT PRIMARY KEY REFERENCES medias(id) ON DELETE CASCADE,
        status TEXT NOT NULL DEFAULT 'pending',
        thread_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS request_users (
        request_id TEXT NOT NULL REFERENCES requests(media_id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        reasons TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (request_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_activities (
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        kind TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, kind)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_requests_status ON requests(status)",
    "CREATE INDEX IF NOT EXISTS idx_requests_thread ON requests(thread_id)",
    "CREATE INDEX IF NOT EXISTS idx_request_users_user ON request_users(user_id)",
]


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string (sortable, microsecond precision)."""
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def upsert_query(
    table: str,
    record: dict[str, Any],
    conflict_keys: Sequence[str],
    update_keys: Optional[Sequence[str]] = None,
) -> tuple[str, tuple]:
    """Build an ``INSERT ... ON CONFLICT ... RETURNING *`` statement.

    Without ``update_keys`` the conflicting row is left untouched and the
    statement returns no row.
    """
    columns = list(record)
    placeholders = ", ".join("?" for _ in columns)
    sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) ON CONFLICT ({', '.join(conflict_keys)}) "
    if update_keys:
        assignments = ", ".join(f"{key} = excluded.{key}" for key in update_keys)
        sql += f"DO UPDATE SET {assignments}"
    else:
        sql += "DO NOTHING"
    sql += " RETURNING *"
    return sql, tuple(record[c] for c in columns)


class Connection(Protocol):
    """What repositories need: either the ``Store`` itself or an open ``Transaction``."""

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        ...

    async def fetch_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[dict]:
        ...

    async def fetch_all(self, sql: str, params: Iterable[Any] = ()) -> list[dict]:
        ...


async def _execute(db: aiosqlite.Connection, sql: str, params: Iterable[Any]) -> int:
    cursor = await db.execute(sql, tuple(params))
    rowcount = cursor.rowcount
    await cursor.close()
    return rowcount


async def _fetch_all(db: aiosqlite.Connection, sql: str, params: Iterable[Any]) -> list[dict]:
    cursor = await db.execute(sql, tuple(params))
    rows = await cursor.fetchall()
    await cursor.close()
    return [dict(row) for row in rows]


class Transaction:
    """Statements executed on an open ``BEGIN IMMEDIATE`` transaction."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db
        self.notifications: list[tuple[str, str]] = []

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        return await _execute(self._db, sql, params)

    async def fetch_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[dict]:
        rows = await _fetch_all(self._db, sql, params)
        return rows[0] if rows else None

    async def fetch_all(self, sql: str, params: Iterable[Any] = ()) -> list[dict]:
        return await _fetch_all(self._db, sql, params)

    def notify(self, channel: str, payload: dict) -> None:
        """Queue a change notification, published after commit."""
        self.notifications.append((channel, json.dumps(payload)))


class Store:
    def __init__(self, database_path: str, publisher: Optional[Publisher] = None):
        self.database_path = database_path
        self.publisher = publisher
        self._db: Optional[aiosqlite.Connection] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store is not connected")
        return self._db

    async def connect(self) -> None:
        if self.database_path != ":memory:":
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE.
        self._db = await aiosqlite.connect(self.database_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        self._lock = asyncio.Lock()
        await self._db.execute("PRAGMA foreign_keys = ON")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def init_db(self) -> None:
        """Initialize the database with required tables."""
        async with self._lock:
            for statement in SCHEMA:
                await self.db.execute(statement)
        logger.info(f"Database ready at {self.database_path}")

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        async with self._lock:
            return await _execute(self.db, sql, params)

    async def fetch_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[dict]:
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    async def fetch_all(self, sql: str, params: Iterable[Any] = ()) -> list[dict]:
        async with self._lock:
            return await _fetch_all(self.db, sql, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        async with self._lock:
            await self.db.execute("BEGIN IMMEDIATE")
            tx = Transaction(self.db)
            try:
                yield tx
                await self.db.execute("COMMIT")
            except BaseException:
                if self.db.in_transaction:
                    await self.db.execute("ROLLBACK")
                if tx.notifications:
                    logger.debug(f"Rolled back, dropping {len(tx.notifications)} notification(s)")
                raise

        self._publish(tx.notifications)

    def _publish(self, notifications: list[tuple[str, str]]) -> None:
        if self.publisher is None:
            return
        for channel, payload in notifications:
            self.publisher(channel, payload)
