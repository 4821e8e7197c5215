"""
Desired-state aggregation.

For each Trakt user and request kind, turn the user's activity into the list
of movies and episodes they want, then hand it to the ledger. A kind is only
fetched again when Trakt reports newer activity than its stored cursor.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional

from .activities import UserActivitiesRepository
from .config import SyncConfig
from .database import Store
from .ledger import RequestKind, RequestsLedger
from .medias import EPISODE, MOVIE, MediaInfo
from .trakt import Episode, Item, Movie, SeasonDetails, Show, TraktClient, TraktUser
from .users import User

logger = logging.getLogger(__name__)

ACTIVITY_FACETS_BY_KIND: dict[RequestKind, tuple[str, ...]] = {
    RequestKind.WATCHLISTED: ("watchlist.updated_at",),
    RequestKind.LISTED: ("lists.liked_at", "lists.updated_at"),
    RequestKind.HIGH_RATED: ("movies.rated_at", "episodes.rated_at", "shows.rated_at", "seasons.rated_at"),
    RequestKind.PROGRESS: ("shows.hidden_at", "shows.dropped_at", "movies.watched_at", "episodes.watched_at"),
}

DEFAULT_BUFFER_COUNT = 3

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def movie_info(movie: Movie) -> MediaInfo:
    return MediaInfo(external_id=movie.ids.imdb or "", type=MOVIE, title=movie.title, year=movie.year)


def episode_info(episode: Episode, show: Show) -> MediaInfo:
    return MediaInfo(
        external_id=episode.ids.imdb or "",
        type=EPISODE,
        title=show.title,
        year=show.year,
        season_number=episode.season,
        episode_number=episode.number,
    )


def regular_episodes(seasons: Iterable[SeasonDetails]) -> list[Episode]:
    """Episodes of every regular season in order; specials (season 0) are left out."""
    return [episode for season in sorted(seasons, key=lambda s: s.number) if season.number > 0 for episode in season.episodes]


def filter_aired(episodes: list[Episode], aired_episodes: Optional[int], start_index: int) -> list[Episode]:
    """Keep the episodes whose absolute index, counted from ``start_index``, has aired."""
    if aired_episodes is None:
        return []
    return episodes[: max(0, aired_episodes - start_index)]


def expand_show(show: Show, seasons: list[SeasonDetails]) -> list[MediaInfo]:
    episodes = filter_aired(regular_episodes(seasons), show.aired_episodes, 0)
    return [episode_info(episode, show) for episode in episodes]


def expand_season(show: Show, seasons: list[SeasonDetails], season_number: int) -> list[MediaInfo]:
    if season_number <= 0:
        return []
    season = next((s for s in seasons if s.number == season_number), None)
    if season is None:
        return []
    start_index = sum(len(s.episodes) for s in seasons if 0 < s.number < season_number)
    episodes = filter_aired(season.episodes, show.aired_episodes, start_index)
    return [episode_info(episode, show) for episode in episodes]


def buffer_count(buffer_duration: int, runtime: Optional[int]) -> int:
    """Episodes needed to cover ``buffer_duration`` minutes of viewing."""
    if not runtime:
        return DEFAULT_BUFFER_COUNT
    return math.ceil(buffer_duration / runtime)


def buffered_expansion(
    show: Show,
    seasons: list[SeasonDetails],
    buffer_duration: int,
    start_season: int = 1,
    start_episode: int = 1,
) -> list[MediaInfo]:
    """The next few aired episodes starting at (start_season, start_episode)."""
    episodes = regular_episodes(seasons)
    index = next(
        (i for i, e in enumerate(episodes) if e.season == start_season and e.number == start_episode),
        None,
    )
    if index is None:
        return []
    end = index + buffer_count(buffer_duration, show.runtime)
    if show.aired_episodes is not None:
        end = min(end, show.aired_episodes)
    return [episode_info(episode, show) for episode in episodes[index:end]]


class Aggregator:
    def __init__(
        self,
        trakt: TraktClient,
        ledger: RequestsLedger,
        store: Store,
        config: Optional[SyncConfig] = None,
        activities: Optional[UserActivitiesRepository] = None,
    ):
        self.trakt = trakt
        self.ledger = ledger
        self.store = store
        self.config = config or SyncConfig()
        self.activities = activities or UserActivitiesRepository()
        self.handlers: dict[RequestKind, Callable[[TraktUser], Awaitable[list[MediaInfo]]]] = {
            RequestKind.WATCHLISTED: self.watchlisted,
            RequestKind.LISTED: self.listed,
            RequestKind.HIGH_RATED: self.high_rated,
            RequestKind.PROGRESS: self.in_progress,
        }

    # Handlers

    async def watchlisted(self, auth: TraktUser) -> list[MediaInfo]:
        items = await self.trakt.get_watchlist(auth, released=True)
        return await self.expand(items[: self.config.wanted_limit], buffering=True)

    async def listed(self, auth: TraktUser) -> list[MediaInfo]:
        items = await self.trakt.get_list(auth, self.config.list_name)
        return await self.expand(items)

    async def high_rated(self, auth: TraktUser) -> list[MediaInfo]:
        items = await self.trakt.get_high_rated(auth, self.config.rating_threshold)
        items = sorted(items, key=lambda i: (i.rating or 0, i.rated_at or _EPOCH), reverse=True)
        return await self.expand(items[: self.config.rated_limit])

    async def in_progress(self, auth: TraktUser) -> list[MediaInfo]:
        shows = await self.trakt.get_in_progress_shows(auth, limit=self.config.progress_limit)
        shows = sorted(shows, key=lambda p: p.progress.last_watched_at or _EPOCH, reverse=True)
        medias: list[MediaInfo] = []
        for entry in shows[: self.config.progress_limit]:
            next_episode = entry.progress.next_episode
            medias.extend(await self._buffered(entry.show, next_episode.season, next_episode.number))
        return medias

    # Expansion

    async def expand(self, items: list[Item], buffering: bool = False) -> list[MediaInfo]:
        """Resolve movies, episodes, shows and seasons into movies and episodes."""
        medias: list[MediaInfo] = []
        for item in items:
            if item.type == "movie":
                medias.append(movie_info(item.movie))
            elif item.type == "episode":
                medias.append(episode_info(item.episode, item.show))
            elif item.type == "show":
                if buffering:
                    medias.extend(await self._buffered(item.show, 1, 1))
                else:
                    show, seasons = await self._show(item.show)
                    medias.extend(expand_show(show, seasons))
            elif item.type == "season":
                if buffering:
                    medias.extend(await self._buffered(item.show, item.season.number, 1))
                else:
                    show, seasons = await self._show(item.show)
                    medias.extend(expand_season(show, seasons, item.season.number))
        return medias

    async def _show(self, show: Show) -> tuple[Show, list[SeasonDetails]]:
        details = await self.trakt.get_show_details(show.ids.trakt)
        seasons = await self.trakt.get_seasons_details(show.ids.trakt)
        return details, seasons

    async def _buffered(self, show: Show, season: int, episode: int) -> list[MediaInfo]:
        details, seasons = await self._show(show)
        return buffered_expansion(details, seasons, self.config.buffer_duration, season, episode)

    # Sync

    async def kinds_to_sync(self, user: User, auth: TraktUser) -> list[RequestKind]:
        """Kinds never synced, or with Trakt activity newer than their cursor."""
        cursors = await self.activities.get_for_user(self.store, user.id)
        last_activities = await self.trakt.get_last_activities(auth)
        kinds = []
        for kind in RequestKind:
            cursor = cursors[kind]
            latest = last_activities.latest(ACTIVITY_FACETS_BY_KIND[kind])
            if cursor is None or latest is None or latest > cursor:
                kinds.append(kind)
        return kinds

    async def sync_kind(self, user: User, auth: TraktUser, kind: RequestKind) -> None:
        medias = await self.handlers[kind](auth)
        logger.info(f"Syncing {user.name} {kind.value} with {len(medias)} medias")
        await self.ledger.sync_medias_for_user_and_kind(user, kind, medias)
        await self.activities.upsert(self.store, user.id, kind)

    async def sync_user(self, user: User, auth: TraktUser) -> list[RequestKind]:
        """Sync every stale kind of one user, one after the other.

        A failing kind is logged and keeps its cursor so it is retried next
        cycle; the other kinds carry on. Returns the kinds that were synced.
        """
        try:
            kinds = await self.kinds_to_sync(user, auth)
        except Exception:
            logger.exception(f"Could not read Trakt activity of {user.name}")
            return []

        if not kinds:
            logger.debug(f"Nothing new for {user.name}")
            return []
        logger.info(f"Syncing {user.name} with kinds {', '.join(k.value for k in kinds)}")

        synced = []
        for kind in kinds:
            try:
                await self.sync_kind(user, auth, kind)
            except Exception:
                logger.exception(f"Sync of {kind.value} failed for {user.name}")
                continue
            synced.append(kind)
        return synced
