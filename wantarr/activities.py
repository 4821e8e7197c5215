"""Per (user, kind) sync cursors."""
from datetime import datetime
from typing import Optional

from .database import Connection, upsert_query, utcnow
from .ledger import RequestKind


class UserActivitiesRepository:
    async def get_for_user(self, conn: Connection, user_id: str) -> dict[RequestKind, Optional[datetime]]:
        """Last successful sync time for every kind, ``None`` when never synced."""
        rows = await conn.fetch_all("SELECT kind, updated_at FROM user_activities WHERE user_id = ?", (user_id,))
        synced = {row["kind"]: datetime.fromisoformat(row["updated_at"]) for row in rows}
        return {kind: synced.get(kind.value) for kind in RequestKind}

    async def upsert(self, conn: Connection, user_id: str, kind: RequestKind, at: Optional[datetime] = None) -> None:
        sql, params = upsert_query(
            "user_activities",
            {"user_id": user_id, "kind": kind.value, "updated_at": at.isoformat() if at else utcnow()},
            conflict_keys=("user_id", "kind"),
            update_keys=("updated_at",),
        )
        await conn.fetch_one(sql, params)
