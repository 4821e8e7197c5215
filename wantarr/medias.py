"""Media identity and the medias table."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .database import Connection, new_id, upsert_query, utcnow

MOVIE = "movie"
EPISODE = "episode"
MEDIA_TYPES = (MOVIE, EPISODE)

# Stored in place of a missing season/episode number.
NO_NUMBER = -1

MediaKey = tuple[str, str, int, int]


@dataclass(frozen=True)
class MediaInfo:
    """A watchable unit as described by an external source.

    Episodes without an IMDb id carry ``external_id=""``; two such episodes
    with the same numbers share an identity. This is a known limitation.
    """
    external_id: str
    type: str
    title: str
    year: Optional[int] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None


@dataclass(frozen=True)
class Media(MediaInfo):
    id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: dict) -> "Media":
        return cls(
            id=row["id"],
            external_id=row["external_id"],
            type=row["type"],
            title=row["title"],
            year=row["year"],
            season_number=_from_db_number(row["season_number"]),
            episode_number=_from_db_number(row["episode_number"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _to_db_number(value: Optional[int]) -> int:
    return NO_NUMBER if value is None else value


def _from_db_number(value: int) -> Optional[int]:
    return None if value == NO_NUMBER else value


def identify(info: MediaInfo) -> MediaKey:
    """Canonical dedup key: external id, type and season/episode numbers."""
    return (
        info.external_id or "",
        info.type,
        _to_db_number(info.season_number),
        _to_db_number(info.episode_number),
    )


def same_media(a: MediaInfo, b: MediaInfo) -> bool:
    return identify(a) == identify(b)


class MediasRepository:
    async def get(self, conn: Connection, media_id: str) -> Optional[Media]:
        row = await conn.fetch_one("SELECT * FROM medias WHERE id = ?", (media_id,))
        return Media.from_row(row) if row else None

    async def find_by_info(self, conn: Connection, info: MediaInfo) -> Optional[Media]:
        row = await conn.fetch_one(
            """
            SELECT * FROM medias
            WHERE external_id = ? AND type = ? AND season_number = ? AND episode_number = ?
            """,
            identify(info),
        )
        return Media.from_row(row) if row else None

    async def list(self, conn: Connection) -> list[Media]:
        rows = await conn.fetch_all("SELECT * FROM medias ORDER BY created_at DESC")
        return [Media.from_row(row) for row in rows]

    async def create(self, conn: Connection, info: MediaInfo) -> Media:
        """Insert a media or refresh the title/year of the existing one."""
        now = utcnow()
        sql, params = upsert_query(
            "medias",
            {
                "id": new_id(),
                "external_id": info.external_id or "",
                "type": info.type,
                "title": info.title,
                "year": info.year,
                "season_number": _to_db_number(info.season_number),
                "episode_number": _to_db_number(info.episode_number),
                "created_at": now,
                "updated_at": now,
            },
            conflict_keys=("external_id", "type", "season_number", "episode_number"),
            update_keys=("title", "year", "updated_at"),
        )
        row = await conn.fetch_one(sql, params)
        return Media.from_row(row)
