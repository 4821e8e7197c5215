"""
Trakt API client.

Every payload is validated through the pydantic models below before it leaves
this module; anything that does not validate raises ``MalformedPayloadError``.

Per-user reads keep one cache entry per (read, user), versioned by the last
activity of the matching facet: a cached answer stays valid exactly until
Trakt reports activity on that facet, and then it is replaced.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Literal, Optional

import httpx
from pydantic import BaseModel, model_validator

from .cache import MemoryCache
from .errors import TraktError
from .parsing import parse_list, parse_model, unwrap
from .ratelimit import send_with_retry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.trakt.tv"

LAST_ACTIVITIES_TTL = 60
DETAILS_TTL = 60 * 60 * 24
ACTIVITY_TTL = 60 * 60 * 24

# Last-activity paths whose change invalidates a cached read.
ACTIVITY_PATHS = {
    "WATCHED": ("movies.watched_at", "episodes.watched_at"),
    "RATED": ("movies.rated_at", "episodes.rated_at", "shows.rated_at", "seasons.rated_at"),
    "HIDDEN": ("shows.hidden_at", "seasons.hidden_at", "movies.hidden_at", "episodes.hidden_at"),
    "DROPPED": ("shows.dropped_at",),
    "LISTED": ("lists.liked_at", "lists.updated_at"),
    "WATCHLISTED": ("watchlist.updated_at",),
}

RATED_TYPES = ("movie", "show", "season", "episode")


class Ids(BaseModel):
    trakt: int
    slug: Optional[str] = None
    imdb: Optional[str] = None
    tmdb: Optional[int] = None
    tvdb: Optional[int] = None


class Movie(BaseModel):
    title: str
    year: Optional[int] = None
    ids: Ids
    released: Optional[date] = None
    runtime: Optional[int] = None


class Show(BaseModel):
    title: str
    year: Optional[int] = None
    ids: Ids
    first_aired: Optional[datetime] = None
    runtime: Optional[int] = None
    aired_episodes: Optional[int] = None


class Season(BaseModel):
    number: int
    ids: Ids


class Episode(BaseModel):
    season: int
    number: int
    title: Optional[str] = None
    ids: Ids


class SeasonDetails(Season):
    episodes: list[Episode] = []


class Item(BaseModel):
    """A watchlist, list or rating entry: a movie, show, season or episode."""
    type: Literal["movie", "show", "season", "episode"]
    movie: Optional[Movie] = None
    show: Optional[Show] = None
    season: Optional[Season] = None
    episode: Optional[Episode] = None
    rating: Optional[int] = None
    rated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_payload(self) -> "Item":
        if self.type == "movie" and self.movie is None:
            raise ValueError("movie entry without movie")
        if self.type != "movie" and self.show is None:
            raise ValueError(f"{self.type} entry without show")
        if self.type == "season" and self.season is None:
            raise ValueError("season entry without season")
        if self.type == "episode" and self.episode is None:
            raise ValueError("episode entry without episode")
        return self

    def is_released(self, now: datetime) -> bool:
        if self.type == "movie":
            return self.movie.released is not None and self.movie.released <= now.date()
        return self.show.first_aired is not None and self.show.first_aired <= now


class TraktList(BaseModel):
    name: str
    ids: Ids


class WatchedShow(BaseModel):
    plays: int = 0
    last_watched_at: Optional[datetime] = None
    show: Show


class HiddenShow(BaseModel):
    hidden_at: Optional[datetime] = None
    show: Show


class ShowProgress(BaseModel):
    aired: int
    completed: int
    last_watched_at: Optional[datetime] = None
    next_episode: Optional[Episode] = None


@dataclass
class ProgressShow:
    show: Show
    progress: ShowProgress


class LastActivities(BaseModel):
    all: datetime
    movies: dict[str, Optional[datetime]] = {}
    episodes: dict[str, Optional[datetime]] = {}
    shows: dict[str, Optional[datetime]] = {}
    seasons: dict[str, Optional[datetime]] = {}
    lists: dict[str, Optional[datetime]] = {}
    watchlist: dict[str, Optional[datetime]] = {}
    favorites: dict[str, Optional[datetime]] = {}

    def at(self, path: str) -> Optional[datetime]:
        section, _, key = path.partition(".")
        return getattr(self, section, {}).get(key)

    def latest(self, paths) -> Optional[datetime]:
        """Most recent timestamp among ``paths``, ``None`` when none is set."""
        dates = [d for d in (self.at(path) for path in paths) if d is not None]
        return max(dates) if dates else None


@dataclass(frozen=True)
class TraktUser:
    """An authenticated Trakt account, keyed by the linked media-server user id."""
    id: str
    access_token: str


class TraktClient:
    def __init__(
        self,
        client_id: str,
        base_url: str = DEFAULT_BASE_URL,
        cache: Optional[MemoryCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.cache = cache if cache is not None else MemoryCache()
        self.http = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Content-Type": "application/json",
                "trakt-api-version": "2",
                "trakt-api-key": client_id,
            },
            timeout=30.0,
            transport=transport,
        )

    async def close(self) -> None:
        await self.http.aclose()

    async def _request(self, endpoint: str, user: Optional[TraktUser] = None, params: Optional[dict] = None) -> Any:
        """Make a request to the Trakt API."""
        headers = {"Authorization": f"Bearer {user.access_token}"} if user else {}
        logger.debug(f"Requesting GET {endpoint}")
        try:
            response = await send_with_retry(self.http, "GET", endpoint, params=params or {}, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TraktError(f"GET {endpoint} failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise TraktError(f"GET {endpoint} failed: {e}") from e
        return response.json()

    async def _activity_cached(self, user: TraktUser, facet: str, name: str, fetch):
        """Cache a per-user read until Trakt reports new activity on ``facet``."""
        activities = await self.get_last_activities(user)
        version = activities.latest(ACTIVITY_PATHS[facet])
        return await self.cache.with_versioned_cache(f"{name}-{user.id}", version, fetch, ACTIVITY_TTL)

    async def get_last_activities(self, user: TraktUser) -> LastActivities:
        async def fetch():
            data = await self._request("/sync/last_activities", user)
            return unwrap(parse_model(LastActivities, data), "last activities")

        return await self.cache.with_cache(f"last-activities-{user.id}", fetch, LAST_ACTIVITIES_TTL)

    async def get_watchlist(self, user: TraktUser, released: bool = True) -> list[Item]:
        """Watchlisted items, restricted to already released titles by default."""
        async def fetch():
            data = await self._request("/sync/watchlist", user, {"extended": "full"} if released else None)
            return unwrap(parse_list(Item, data), "watchlist")

        items = await self._activity_cached(user, "WATCHLISTED", f"watchlist-{released}", fetch)
        if released:
            now = datetime.now(timezone.utc)
            items = [item for item in items if item.is_released(now)]
        return items

    async def get_list(self, user: TraktUser, name: str) -> list[Item]:
        """Items of the user's own list called ``name``; empty when it does not exist."""
        async def fetch():
            lists = unwrap(parse_list(TraktList, await self._request("/users/me/lists", user)), "lists")
            match = next((lst for lst in lists if lst.name == name), None)
            if match is None:
                logger.debug(f"No list named {name!r} for {user.id}")
                return []
            list_id = match.ids.slug or match.ids.trakt
            data = await self._request(f"/users/me/lists/{list_id}/items", user)
            return unwrap(parse_list(Item, data), f"list {name}")

        return await self._activity_cached(user, "LISTED", f"list-{name}", fetch)

    async def get_high_rated(self, user: TraktUser, threshold: int) -> list[Item]:
        """Every movie, show, season and episode rated from ``threshold`` to 10."""
        if threshold < 1 or threshold > 10:
            raise ValueError("Invalid rating threshold, must be between 1 and 10")
        rates = ",".join(str(r) for r in range(threshold, 11))

        items: list[Item] = []
        for media_type in RATED_TYPES:
            async def fetch(media_type=media_type):
                data = await self._request(f"/sync/ratings/{media_type}s/{rates}", user)
                return unwrap(parse_list(Item, data), f"{media_type} ratings")

            items.extend(await self._activity_cached(user, "RATED", f"ratings-{media_type}-{rates}", fetch))
        return items

    async def get_hidden_shows(self, user: TraktUser) -> list[HiddenShow]:
        async def fetch():
            data = await self._request(
                "/users/hidden/progress_watched", user, {"type": "show", "limit": 9999}
            )
            return unwrap(parse_list(HiddenShow, data), "hidden shows")

        return await self._activity_cached(user, "HIDDEN", "hidden", fetch)

    async def get_watched_shows(self, user: TraktUser) -> list[WatchedShow]:
        async def fetch():
            data = await self._request("/sync/watched/shows", user, {"extended": "noseasons"})
            return unwrap(parse_list(WatchedShow, data), "watched shows")

        return await self._activity_cached(user, "WATCHED", "watched", fetch)

    async def get_show_progress(self, user: TraktUser, show_id: int) -> ShowProgress:
        async def fetch():
            data = await self._request(f"/shows/{show_id}/progress/watched", user)
            return unwrap(parse_model(ShowProgress, data), f"progress of show {show_id}")

        return await self._activity_cached(user, "WATCHED", f"progress-{show_id}", fetch)

    async def get_in_progress_shows(self, user: TraktUser, limit: Optional[int] = None) -> list[ProgressShow]:
        """Shows with aired episodes left to watch, most recently watched first.

        Shows hidden from progress are skipped. With ``limit``, progress is
        only fetched until that many unfinished shows have been found.
        """
        hidden = {h.show.ids.trakt for h in await self.get_hidden_shows(user)}
        watched = [w for w in await self.get_watched_shows(user) if w.show.ids.trakt not in hidden]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        watched.sort(key=lambda w: w.last_watched_at or epoch, reverse=True)

        shows: list[ProgressShow] = []
        for entry in watched:
            progress = await self.get_show_progress(user, entry.show.ids.trakt)
            if progress.next_episode is not None and progress.aired > progress.completed:
                shows.append(ProgressShow(show=entry.show, progress=progress))
                if limit is not None and len(shows) >= limit:
                    break
        return shows

    async def get_show_details(self, show_id: int) -> Show:
        async def fetch():
            data = await self._request(f"/shows/{show_id}", params={"extended": "full"})
            return unwrap(parse_model(Show, data), f"show {show_id}")

        return await self.cache.with_cache(f"show-details-{show_id}", fetch, DETAILS_TTL)

    async def get_seasons_details(self, show_id: int) -> list[SeasonDetails]:
        async def fetch():
            data = await self._request(f"/shows/{show_id}/seasons", params={"extended": "episodes"})
            return unwrap(parse_list(SeasonDetails, data), f"seasons of show {show_id}")

        return await self.cache.with_cache(f"show-seasons-details-{show_id}", fetch, DETAILS_TTL)
