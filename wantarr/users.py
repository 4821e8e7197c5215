"""Users known to the bot and the messaging channel they came from."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .database import Connection, new_id, upsert_query, utcnow


@dataclass
class User:
    id: str
    name: str
    messaging_key: str
    messaging_id: str
    media_server_id: Optional[str] = None
    approval_message_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    # Newest direct message already handled.
    last_message_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "User":
        return cls(**row)


class UsersRepository:
    async def list(self, conn: Connection) -> list[User]:
        rows = await conn.fetch_all("SELECT * FROM users ORDER BY created_at")
        return [User.from_row(row) for row in rows]

    async def get(self, conn: Connection, user_id: str) -> Optional[User]:
        row = await conn.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return User.from_row(row) if row else None

    async def get_by_messaging(self, conn: Connection, messaging_key: str, messaging_id: str) -> Optional[User]:
        row = await conn.fetch_one(
            "SELECT * FROM users WHERE messaging_key = ? AND messaging_id = ?",
            (messaging_key, messaging_id),
        )
        return User.from_row(row) if row else None

    async def get_by_approval_message_id(self, conn: Connection, message_id: str) -> Optional[User]:
        row = await conn.fetch_one("SELECT * FROM users WHERE approval_message_id = ?", (message_id,))
        return User.from_row(row) if row else None

    async def get_by_media_server_id(self, conn: Connection, media_server_id: str) -> Optional[User]:
        row = await conn.fetch_one("SELECT * FROM users WHERE media_server_id = ?", (media_server_id,))
        return User.from_row(row) if row else None

    async def list_pending_approvals(self, conn: Connection) -> list[User]:
        rows = await conn.fetch_all(
            "SELECT * FROM users WHERE approval_message_id IS NOT NULL AND media_server_id IS NULL"
        )
        return [User.from_row(row) for row in rows]

    async def create_from_messaging(self, conn: Connection, messaging_key: str, messaging_id: str, name: str) -> User:
        """Create a user on first contact, or return the existing one untouched."""
        now = utcnow()
        sql, params = upsert_query(
            "users",
            {
                "id": new_id(),
                "name": name,
                "messaging_key": messaging_key,
                "messaging_id": messaging_id,
                "created_at": now,
                "updated_at": now,
            },
            conflict_keys=("messaging_key", "messaging_id"),
        )
        row = await conn.fetch_one(sql, params)
        if row:
            return User.from_row(row)
        return await self.get_by_messaging(conn, messaging_key, messaging_id)

    async def rename(self, conn: Connection, user_id: str, name: str) -> None:
        await conn.execute("UPDATE users SET name = ?, updated_at = ? WHERE id = ?", (name, utcnow(), user_id))

    async def link_approval_message(self, conn: Connection, user_id: str, message_id: str) -> None:
        await conn.execute(
            "UPDATE users SET approval_message_id = ?, updated_at = ? WHERE id = ?",
            (message_id, utcnow(), user_id),
        )

    async def set_media_server_id(self, conn: Connection, user_id: str, media_server_id: str) -> None:
        await conn.execute(
            "UPDATE users SET media_server_id = ?, updated_at = ? WHERE id = ?",
            (media_server_id, utcnow(), user_id),
        )

    async def clear_approval_message(self, conn: Connection, user_id: str) -> None:
        await conn.execute(
            "UPDATE users SET approval_message_id = NULL, updated_at = ? WHERE id = ?", (utcnow(), user_id)
        )

    async def list_by_messaging_key(self, conn: Connection, messaging_key: str) -> list[User]:
        rows = await conn.fetch_all(
            "SELECT * FROM users WHERE messaging_key = ? ORDER BY created_at", (messaging_key,)
        )
        return [User.from_row(row) for row in rows]

    async def set_last_message_id(self, conn: Connection, user_id: str, message_id: str) -> None:
        await conn.execute(
            "UPDATE users SET last_message_id = ?, updated_at = ? WHERE id = ?", (message_id, utcnow(), user_id)
        )
