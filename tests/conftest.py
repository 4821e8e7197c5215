from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import pytest

from wantarr.database import Store
from wantarr.events import ChangeBus
from wantarr.ledger import RequestsLedger
from wantarr.medias import EPISODE, MOVIE, MediaInfo
from wantarr.users import User, UsersRepository


@pytest.fixture()
async def bus():
    bus = ChangeBus()
    bus.start()
    yield bus
    await bus.stop()


@pytest.fixture()
def published() -> list[tuple[str, str]]:
    return []


@pytest.fixture()
async def store(tmp_path, bus, published):
    def publish(channel: str, payload: str) -> None:
        published.append((channel, payload))
        bus.publish(channel, payload)

    store = Store(str(tmp_path / "wantarr.db"), publisher=publish)
    await store.connect()
    await store.init_db()
    yield store
    await store.close()


@pytest.fixture()
def ledger(store) -> RequestsLedger:
    return RequestsLedger(store)


@pytest.fixture()
def users_repo() -> UsersRepository:
    return UsersRepository()


@pytest.fixture()
async def alice(store, users_repo) -> User:
    user = await users_repo.create_from_messaging(store, "discord", "111", "alice")
    await users_repo.set_media_server_id(store, user.id, "aaaa")
    return await users_repo.get(store, user.id)


@pytest.fixture()
async def bob(store, users_repo) -> User:
    user = await users_repo.create_from_messaging(store, "email", "bob@example.com", "bob")
    await users_repo.set_media_server_id(store, user.id, "bbbb")
    return await users_repo.get(store, user.id)


def movie(imdb: str, title: str = "A Movie", year: Optional[int] = 2020) -> MediaInfo:
    return MediaInfo(external_id=imdb, type=MOVIE, title=title, year=year)


def episode(imdb: str, season: int, number: int, title: str = "A Show") -> MediaInfo:
    return MediaInfo(
        external_id=imdb, type=EPISODE, title=title, year=2019, season_number=season, episode_number=number
    )


def channels(published: list[tuple[str, str]]) -> list[str]:
    return [channel for channel, _ in published]


@dataclass
class FakeDiscord:
    """Records outgoing chat calls; message and thread ids are sequential."""

    calls: list[tuple[str, tuple]] = field(default_factory=list)
    handlers: list = field(default_factory=list)
    providers: list = field(default_factory=list)
    member_handlers: list = field(default_factory=list)
    message_handlers: list = field(default_factory=list)
    inbox_providers: list = field(default_factory=list)
    next_id: int = 1000

    def _id(self) -> str:
        self.next_id += 1
        return str(self.next_id)

    async def send_channel_message(self, channel_id: str, content: str = "", embeds=None) -> dict:
        self.calls.append(("send_channel_message", (channel_id, content, embeds)))
        return {"id": self._id()}

    async def start_thread(self, channel_id: str, message_id: str, name: str) -> str:
        self.calls.append(("start_thread", (channel_id, message_id, name)))
        return message_id

    async def send_thread_message(self, thread_id: str, content: str) -> dict:
        self.calls.append(("send_thread_message", (thread_id, content)))
        return {"id": self._id()}

    async def edit_message(self, channel_id: str, message_id: str, content=None, embeds=None) -> dict:
        self.calls.append(("edit_message", (channel_id, message_id)))
        return {"id": message_id}

    async def send_direct_message(self, user_id: str, content: str = "", embeds=None) -> dict:
        self.calls.append(("send_direct_message", (user_id, content, embeds)))
        return {"id": self._id()}

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        self.calls.append(("add_reaction", (channel_id, message_id, emoji)))

    async def remove_user_reaction(self, channel_id: str, message_id: str, emoji: str, user_id: str) -> None:
        self.calls.append(("remove_user_reaction", (channel_id, message_id, emoji, user_id)))

    async def remove_all_reactions(self, channel_id: str, message_id: str) -> None:
        self.calls.append(("remove_all_reactions", (channel_id, message_id)))

    def on_reaction(self, handler):
        self.handlers.append(handler)
        return lambda: self.handlers.remove(handler)

    def watch_messages(self, provider):
        self.providers.append(provider)
        return lambda: self.providers.remove(provider)

    def on_member(self, handler):
        self.member_handlers.append(handler)
        return lambda: self.member_handlers.remove(handler)

    def on_direct_message(self, handler):
        self.message_handlers.append(handler)
        return lambda: self.message_handlers.remove(handler)

    def watch_inboxes(self, provider):
        self.inbox_providers.append(provider)
        return lambda: self.inbox_providers.remove(provider)

    def named(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]


@dataclass
class FakeMailer:
    sent: list[dict[str, Any]] = field(default_factory=list)

    async def send(self, to_address: str, subject: str, text: str, html: Optional[str] = None) -> None:
        self.sent.append({"to": to_address, "subject": subject, "text": text, "html": html})


@pytest.fixture()
def discord() -> FakeDiscord:
    return FakeDiscord()


@pytest.fixture()
def mailer() -> FakeMailer:
    return FakeMailer()
