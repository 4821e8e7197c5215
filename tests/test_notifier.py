from __future__ import annotations

import pytest
from conftest import movie

from wantarr.email_queue import EmailBatcher
from wantarr.events import RequestStatusChanged, UserJoinedRequest
from wantarr.ledger import RequestKind, RequestStatus
from wantarr.messaging import DISCORD, EMAIL, DiscordUserChannel, EmailUserChannel, UserMessaging
from wantarr.notifier import UserNotifier, should_notify

S = RequestStatus


@pytest.mark.parametrize(
    "key, old, new, expected",
    [
        (DISCORD, None, S.PENDING, True),
        (DISCORD, S.REJECTED, S.PENDING, True),
        (DISCORD, S.PENDING, S.CANCELED, True),
        (EMAIL, None, S.PENDING, True),
        (EMAIL, S.PENDING, S.FULFILLED, True),
        (EMAIL, S.PENDING, S.MISSING, True),
        (EMAIL, S.PENDING, S.REJECTED, True),
        (EMAIL, S.MISSING, S.PENDING, False),
        (EMAIL, S.REJECTED, S.PENDING, False),
        (EMAIL, S.PENDING, S.CANCELED, False),
    ],
)
def test_should_notify(key, old, new, expected) -> None:
    assert should_notify(key, old, new) is expected


@pytest.fixture()
def batcher():
    async def never(recipient, requests):
        raise AssertionError("debounce window should not elapse during the test")

    return EmailBatcher(never, debounce_seconds=3600)


@pytest.fixture()
async def notifier(ledger, bus, discord, mailer, batcher):
    messaging = UserMessaging(
        {
            DISCORD: DiscordUserChannel(discord, locale="en"),
            EMAIL: EmailUserChannel(mailer, batcher=batcher, locale="en"),
        }
    )
    notifier = UserNotifier(ledger, messaging, bus)
    yield notifier
    await batcher.close()


async def shared_request(ledger, alice, bob) -> str:
    foo = movie("tt0000001", title="Foo")
    await ledger.sync_medias_for_user_and_kind(alice, RequestKind.WATCHLISTED, [foo])
    await ledger.sync_medias_for_user_and_kind(bob, RequestKind.LISTED, [foo])
    return (await ledger.list())[0].id


async def test_status_change_reaches_every_user(notifier, ledger, discord, batcher, alice, bob) -> None:
    request_id = await shared_request(ledger, alice, bob)
    await ledger.update_status(request_id, RequestStatus.MISSING)

    await notifier.on_status_changed(RequestStatusChanged(request_id=request_id, old_status="pending", new_status="missing"))

    (user_id, _, embeds), = discord.named("send_direct_message")
    assert user_id == alice.messaging_id
    assert embeds[0]["title"] == "Foo (2020)"
    assert [r.status for r in batcher.pending(bob.messaging_id)] == [RequestStatus.MISSING]


async def test_reopened_request_is_not_emailed(notifier, ledger, discord, batcher, alice, bob) -> None:
    request_id = await shared_request(ledger, alice, bob)

    await notifier.on_status_changed(RequestStatusChanged(request_id=request_id, old_status="rejected", new_status="pending"))

    assert len(discord.named("send_direct_message")) == 1
    assert batcher.pending(bob.messaging_id) == []


async def test_join_notifies_only_the_joining_user(notifier, ledger, discord, batcher, alice, bob) -> None:
    request_id = await shared_request(ledger, alice, bob)

    await notifier.on_user_joined(UserJoinedRequest(request_id=request_id, user_id=bob.id))

    assert discord.named("send_direct_message") == []
    assert [r.id for r in batcher.pending(bob.messaging_id)] == [request_id]


async def test_deleted_request_is_skipped(notifier, discord) -> None:
    await notifier.on_status_changed(RequestStatusChanged(request_id="gone", old_status="pending", new_status="missing"))
    assert discord.calls == []


async def test_bus_subscription_drives_notifications(notifier, ledger, bus, discord, alice) -> None:
    notifier.start()
    await ledger.sync_medias_for_user_and_kind(alice, RequestKind.WATCHLISTED, [movie("tt0000001")])
    await bus.drain()
    notifier.close()

    assert len(discord.named("send_direct_message")) == 1
