"""Periodic sync loop: Trakt wants first, then library availability."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .aggregator import Aggregator
from .database import Store
from .jellyfin import JellyfinClient, normalize_id
from .ledger import Request, RequestKind, RequestsLedger
from .trakt import TraktUser
from .users import User, UsersRepository

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    synced: dict[str, list[RequestKind]] = field(default_factory=dict)
    fulfilled: list[Request] = field(default_factory=list)
    availability_failed: bool = False


class SyncDriver:
    def __init__(
        self,
        store: Store,
        aggregator: Aggregator,
        ledger: RequestsLedger,
        jellyfin: JellyfinClient,
        interval_seconds: float = 60,
        concurrency: int = 4,
        users: Optional[UsersRepository] = None,
    ):
        self.store = store
        self.aggregator = aggregator
        self.ledger = ledger
        self.jellyfin = jellyfin
        self.interval_seconds = interval_seconds
        self.concurrency = max(1, concurrency)
        self.users = users or UsersRepository()
        self._task: Optional[asyncio.Task] = None
        self._cycle_lock = asyncio.Lock()

    async def list_users(self) -> list[tuple[User, TraktUser]]:
        """Known users that have a Trakt account linked on the media server."""
        by_media_server_id = {
            normalize_id(user.media_server_id): user
            for user in await self.users.list(self.store)
            if user.media_server_id
        }
        pairs = []
        for auth in await self.jellyfin.get_trakt_auth_contexts():
            user = by_media_server_id.get(normalize_id(auth.id))
            if user:
                pairs.append((user, auth))
        return pairs

    async def sync_targeted(self, report: CycleReport) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(user: User, auth: TraktUser) -> None:
            async with semaphore:
                try:
                    report.synced[user.id] = await self.aggregator.sync_user(user, auth)
                except Exception:
                    logger.exception(f"Sync of {user.name} crashed")

        try:
            pairs = await self.list_users()
        except Exception:
            logger.exception("Could not list Trakt users")
            return
        await asyncio.gather(*(run(user, auth) for user, auth in pairs))

    async def sync_available(self, report: CycleReport) -> None:
        try:
            library = await self.jellyfin.list_library_items()
            report.fulfilled = await self.ledger.sync_collected_medias(library)
        except Exception:
            logger.exception("Availability sync failed")
            report.availability_failed = True

    async def run_once(self) -> CycleReport:
        """Run one full cycle; cycles never overlap."""
        async with self._cycle_lock:
            logger.info("Starting synchronization")
            report = CycleReport()
            await self.sync_targeted(report)
            await self.sync_available(report)
            logger.info("Synchronization completed")
            return report

    async def _loop(self, run_immediately: bool) -> None:
        if not run_immediately:
            await asyncio.sleep(self.interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Synchronization cycle crashed")
            await asyncio.sleep(self.interval_seconds)

    def start(self, run_immediately: bool = True) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(run_immediately), name="sync-driver")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
