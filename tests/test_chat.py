from __future__ import annotations

import json

import httpx
import pytest

from wantarr.chat import DiscordClient, Inbox, WatchedMessage
from wantarr.errors import ChatError

BOT = "900"


class FakeDiscordApi:
    def __init__(self):
        self.reactions: dict[str, dict[str, list[str]]] = {}
        self.channel_messages: dict[str, list[dict]] = {}
        self.members: list[dict] = []
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/v10")
        parts = path.strip("/").split("/")
        if path == "/users/@me":
            return httpx.Response(200, json={"id": BOT, "username": "wantarr"})
        if path == "/users/@me/channels":
            return httpx.Response(200, json={"id": "dm-" + json.loads(request.content)["recipient_id"]})
        if parts[0] == "channels" and len(parts) == 4 and request.method == "GET":
            reactions = self.reactions.get(parts[3])
            if reactions is None:
                return httpx.Response(404, json={"message": "Unknown Message"})
            return httpx.Response(200, json={"id": parts[3], "reactions": [{"emoji": {"name": e}} for e in reactions]})
        if parts[0] == "channels" and len(parts) == 6 and request.method == "GET":
            return httpx.Response(200, json=[{"id": user_id} for user_id in self.reactions[parts[3]][parts[5]]])
        if parts[0] == "channels" and len(parts) == 7 and request.method == "DELETE":
            self.reactions[parts[3]][parts[5]].remove(parts[6])
            return httpx.Response(204)
        if parts[0] == "channels" and parts[-1] == "messages" and request.method == "GET":
            after = int(request.url.params.get("after", "0"))
            newer = [m for m in self.channel_messages.get(parts[1], []) if int(m["id"]) > after]
            return httpx.Response(200, json=list(reversed(newer)))
        if parts[0] == "guilds" and parts[-1] == "members":
            after = int(request.url.params["after"])
            return httpx.Response(200, json=[m for m in self.members if int(m["user"]["id"]) > after])
        if parts[0] == "channels" and parts[-1] == "messages" and request.method == "POST":
            return httpx.Response(200, json={"id": "m1", "channel_id": parts[1]})
        return httpx.Response(204)


@pytest.fixture()
def api() -> FakeDiscordApi:
    return FakeDiscordApi()


@pytest.fixture()
async def client(api):
    client = DiscordClient("bot-token", transport=httpx.MockTransport(api))
    await client.connect()
    yield client
    await client.close()


async def test_connect_resolves_bot_id(client, api) -> None:
    assert client.bot_id == BOT
    assert api.requests[0].headers["authorization"] == "Bot bot-token"


async def test_direct_message_opens_a_dm_channel(client, api) -> None:
    await client.send_direct_message("123", "hello")

    dm_post = api.requests[-1]
    assert dm_post.url.path.endswith("/channels/dm-123/messages")
    assert json.loads(dm_post.content) == {"content": "hello"}


async def test_new_reactions_are_reported_once(client, api) -> None:
    api.reactions["m1"] = {"🚫": [BOT, "42"]}
    received = []

    async def handler(event) -> None:
        received.append((event.message_id, event.emoji, event.user_id))

    async def provider():
        return [WatchedMessage("c1", "m1")]

    client.on_reaction(handler)
    client.watch_messages(provider)

    await client.poll_reactions()
    await client.poll_reactions()
    api.reactions["m1"]["⏳"] = ["42"]
    await client.poll_reactions()

    assert received == [("m1", "🚫", "42"), ("m1", "⏳", "42")]


async def test_unreadable_message_is_skipped(client, api) -> None:
    async def provider():
        return [WatchedMessage("c1", "gone")]

    client.watch_messages(provider)

    assert await client.poll_reactions() == []


async def test_disposed_handlers_stop_receiving(client, api) -> None:
    api.reactions["m1"] = {"✅": ["42"]}
    received = []

    async def handler(event) -> None:
        received.append(event)

    async def provider():
        return [WatchedMessage("c1", "m1")]

    dispose = client.on_reaction(handler)
    client.watch_messages(provider)
    dispose()
    await client.poll_reactions()

    assert received == []


async def test_http_errors_become_chat_errors() -> None:
    client = DiscordClient("bot-token", transport=httpx.MockTransport(lambda request: httpx.Response(403)))
    with pytest.raises(ChatError):
        await client.send_channel_message("c1", "hello")
    await client.close()


async def test_taken_back_reaction_is_not_replayed_after_restart(api) -> None:
    api.reactions["m1"] = {"🫥": ["42"]}

    async def provider():
        return [WatchedMessage("c1", "m1")]

    for lifetime in range(2):
        client = DiscordClient("bot-token", transport=httpx.MockTransport(api))
        await client.connect()
        received = []

        async def handler(event, client=client, received=received) -> None:
            received.append(event.emoji)
            await client.remove_user_reaction(event.channel_id, event.message_id, event.emoji, event.user_id)

        client.on_reaction(handler)
        client.watch_messages(provider)
        await client.poll_reactions()
        await client.close()

        assert received == (["🫥"] if lifetime == 0 else [])
    assert api.reactions["m1"]["🫥"] == []


async def test_seen_reactions_are_forgotten_once_unwatched(client, api) -> None:
    api.reactions["m1"] = {"✅": ["42"]}
    watched = [WatchedMessage("c1", "m1")]

    async def provider():
        return list(watched)

    client.watch_messages(provider)

    assert len(await client.poll_reactions()) == 1
    watched.clear()
    assert await client.poll_reactions() == []
    watched.append(WatchedMessage("c1", "m1"))
    assert len(await client.poll_reactions()) == 1


async def test_direct_messages_after_the_cursor_are_reported_once(client, api) -> None:
    api.channel_messages["dm-555"] = [
        {"id": "101", "author": {"id": "555"}, "content": "old"},
        {"id": "105", "author": {"id": BOT}, "content": "Welcome!"},
        {"id": "110", "author": {"id": "555"}, "content": "!register carol"},
    ]
    received = []

    async def handler(message) -> None:
        received.append((message.message_id, message.content))

    async def inboxes():
        return [Inbox("555", "101")]

    client.on_direct_message(handler)
    client.watch_inboxes(inboxes)

    await client.poll_direct_messages()
    await client.poll_direct_messages()
    api.channel_messages["dm-555"].append({"id": "120", "author": {"id": "555"}, "content": "thanks"})
    await client.poll_direct_messages()

    assert received == [("110", "!register carol"), ("120", "thanks")]


async def test_guild_members_are_reported_once(api) -> None:
    api.members = [
        {"user": {"id": "555", "username": "carol"}, "joined_at": "2024-05-01T10:00:00.000000+00:00"},
        {"user": {"id": "556", "username": "dave", "global_name": "Dave"}, "nick": "D"},
        {"user": {"id": "777", "username": "otherbot", "bot": True}},
    ]
    client = DiscordClient("bot-token", guild_id="g1", transport=httpx.MockTransport(api))
    received = []

    async def handler(member) -> None:
        received.append(member)

    client.on_member(handler)
    await client.poll_members()
    api.members.append({"user": {"id": "558", "username": "erin"}})
    await client.poll_members()
    await client.close()

    assert [(m.user_id, m.name) for m in received] == [("555", "carol"), ("556", "D"), ("558", "erin")]
    assert received[0].joined_at.year == 2024
    assert received[1].joined_at is None
    assert any(r.url.path.endswith("/guilds/g1/members") for r in api.requests)


async def test_member_polling_needs_a_guild(client, api) -> None:
    async def handler(member) -> None:
        raise AssertionError("no guild configured")

    client.on_member(handler)

    assert await client.poll_members() == []
    assert not any("/guilds/" in r.url.path for r in api.requests)


async def test_one_failing_poller_does_not_stop_the_others(api) -> None:
    api.reactions["m1"] = {"✅": ["42"]}
    client = DiscordClient("bot-token", guild_id="g1", transport=httpx.MockTransport(api))
    received = []

    async def broken_inboxes():
        raise RuntimeError("database is locked")

    async def provider():
        return [WatchedMessage("c1", "m1")]

    async def handler(event) -> None:
        received.append(event.emoji)

    client.watch_inboxes(broken_inboxes)
    client.watch_messages(provider)
    client.on_reaction(handler)
    await client.poll()
    await client.close()

    assert received == ["✅"]
