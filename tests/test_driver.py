from __future__ import annotations

import asyncio

import pytest
from conftest import movie

from wantarr.driver import SyncDriver
from wantarr.errors import JellyfinError
from wantarr.ledger import RequestKind, RequestStatus
from wantarr.trakt import TraktUser


class FakeAggregator:
    def __init__(self, ledger):
        self.ledger = ledger
        self.seen: list[tuple[str, str]] = []
        self.crash_for: set[str] = set()

    async def sync_user(self, user, auth):
        self.seen.append((user.name, auth.access_token))
        if user.name in self.crash_for:
            raise RuntimeError("unexpected")
        await self.ledger.sync_medias_for_user_and_kind(user, RequestKind.WATCHLISTED, [movie("tt0000001")])
        return [RequestKind.WATCHLISTED]


class FakeJellyfin:
    def __init__(self):
        self.contexts = [
            TraktUser(id="aaaa", access_token="token-alice"),
            TraktUser(id="bbbb", access_token="token-bob"),
            TraktUser(id="ffff", access_token="token-stranger"),
        ]
        self.library = [movie("tt0000001")]
        self.library_down = False

    async def get_trakt_auth_contexts(self):
        return self.contexts

    async def list_library_items(self):
        if self.library_down:
            raise JellyfinError("down")
        return self.library


@pytest.fixture()
def jellyfin() -> FakeJellyfin:
    return FakeJellyfin()


@pytest.fixture()
def aggregator(ledger) -> FakeAggregator:
    return FakeAggregator(ledger)


@pytest.fixture()
def driver(store, aggregator, ledger, jellyfin) -> SyncDriver:
    return SyncDriver(store, aggregator, ledger, jellyfin, interval_seconds=0.01, concurrency=2)


async def test_users_are_joined_with_trakt_accounts(driver, alice, bob, users_repo, store) -> None:
    await users_repo.create_from_messaging(store, "discord", "333", "unregistered")

    pairs = await driver.list_users()

    assert sorted((user.name, auth.access_token) for user, auth in pairs) == [
        ("alice", "token-alice"),
        ("bob", "token-bob"),
    ]


async def test_cycle_syncs_wants_then_availability(driver, ledger, alice, bob) -> None:
    report = await driver.run_once()

    assert report.synced == {alice.id: [RequestKind.WATCHLISTED], bob.id: [RequestKind.WATCHLISTED]}
    assert [r.media.external_id for r in report.fulfilled] == ["tt0000001"]
    assert [r.status for r in await ledger.list()] == [RequestStatus.FULFILLED]


async def test_crashing_user_does_not_stop_the_cycle(driver, aggregator, alice, bob) -> None:
    aggregator.crash_for = {"alice"}

    report = await driver.run_once()

    assert list(report.synced) == [bob.id]
    assert len(report.fulfilled) == 1


async def test_library_failure_is_isolated(driver, jellyfin, ledger, alice) -> None:
    jellyfin.library_down = True

    report = await driver.run_once()

    assert report.availability_failed
    assert report.synced == {alice.id: [RequestKind.WATCHLISTED]}
    assert [r.status for r in await ledger.list()] == [RequestStatus.PENDING]


async def test_loop_runs_until_stopped(driver, aggregator, alice) -> None:
    driver.start()
    await asyncio.sleep(0.1)
    await driver.stop()
    runs = len(aggregator.seen)
    await asyncio.sleep(0.05)

    assert runs >= 2
    assert len(aggregator.seen) == runs
