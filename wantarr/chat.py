"""
Discord REST client.

Inbound activity is observed by polling:

* reactions: watch providers return the messages components care about, and
  each new (message, emoji, user) reaction is reported once to every handler.
  Reactions made by the bot itself are ignored.
* direct messages: inbox providers return (user, newest handled message id)
  pairs, and messages written by that user after that id are reported.
* guild members: every member of the configured guild is reported once per
  client lifetime.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import quote

import httpx

from .errors import ChatError
from .ratelimit import send_with_retry

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://discord.com/api/v10"
ONE_WEEK_MINUTES = 10080
DISCORD_EPOCH_MS = 1420070400000
MEMBERS_PAGE_SIZE = 1000
MESSAGES_PAGE_SIZE = 50


@dataclass(frozen=True)
class WatchedMessage:
    channel_id: str
    message_id: str


@dataclass(frozen=True)
class ReactionEvent:
    channel_id: str
    message_id: str
    emoji: str
    user_id: str


@dataclass(frozen=True)
class Inbox:
    user_id: str
    after: str


@dataclass(frozen=True)
class DirectMessage:
    user_id: str
    channel_id: str
    message_id: str
    content: str


@dataclass(frozen=True)
class GuildMember:
    user_id: str
    name: str
    joined_at: Optional[datetime]


ReactionHandler = Callable[[ReactionEvent], Awaitable[None]]
WatchProvider = Callable[[], Awaitable[Iterable[WatchedMessage]]]
MessageHandler = Callable[[DirectMessage], Awaitable[None]]
InboxProvider = Callable[[], Awaitable[Iterable[Inbox]]]
MemberHandler = Callable[[GuildMember], Awaitable[None]]


def snowflake_at(when: datetime) -> str:
    """Smallest Discord id that could have been created at ``when``."""
    return str(max(0, int(when.timestamp() * 1000) - DISCORD_EPOCH_MS) << 22)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _remove(items: list, item) -> Callable[[], None]:
    def dispose() -> None:
        if item in items:
            items.remove(item)

    return dispose


async def _dispatch(handlers: list, event: Any, description: str) -> None:
    for handler in list(handlers):
        try:
            await handler(event)
        except Exception:
            logger.exception(f"Handler failed on {description}")


class DiscordClient:
    def __init__(
        self,
        token: str,
        api_url: str = DEFAULT_API_URL,
        guild_id: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.http = httpx.AsyncClient(
            base_url=api_url,
            headers={"Authorization": f"Bot {token}", "Content-Type": "application/json"},
            timeout=15.0,
            transport=transport,
        )
        self.guild_id = guild_id
        self.bot_id: Optional[str] = None
        self._reaction_handlers: list[ReactionHandler] = []
        self._watch_providers: list[WatchProvider] = []
        self._message_handlers: list[MessageHandler] = []
        self._inbox_providers: list[InboxProvider] = []
        self._member_handlers: list[MemberHandler] = []
        self._seen: set[tuple[str, str, str]] = set()
        self._known_members: set[str] = set()
        self._dm_channels: dict[str, str] = {}
        self._inbox_cursors: dict[str, int] = {}
        self._poller: Optional[asyncio.Task] = None

    async def close(self) -> None:
        await self.stop_polling()
        await self.http.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        try:
            response = await send_with_retry(self.http, method, endpoint, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ChatError(f"{method} {endpoint} failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ChatError(f"{method} {endpoint} failed: {e}") from e
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def connect(self) -> str:
        """Resolve the bot's own user id."""
        me = await self._request("GET", "/users/@me")
        self.bot_id = me["id"]
        logger.info(f"Discord bot connected as {me.get('username')}")
        return self.bot_id

    # Messages

    async def send_channel_message(
        self, channel_id: str, content: str = "", embeds: Optional[list[dict]] = None
    ) -> dict:
        payload: dict = {"content": content}
        if embeds:
            payload["embeds"] = embeds
        return await self._request("POST", f"/channels/{channel_id}/messages", json=payload)

    async def start_thread(self, channel_id: str, message_id: str, name: str) -> str:
        """Open a thread on a message; returns the thread (channel) id."""
        thread = await self._request(
            "POST",
            f"/channels/{channel_id}/messages/{message_id}/threads",
            json={"name": name[:100], "auto_archive_duration": ONE_WEEK_MINUTES},
        )
        return thread["id"]

    async def send_thread_message(self, thread_id: str, content: str) -> dict:
        return await self.send_channel_message(thread_id, content)

    async def get_message(self, channel_id: str, message_id: str) -> dict:
        return await self._request("GET", f"/channels/{channel_id}/messages/{message_id}")

    async def list_messages(self, channel_id: str, after: Optional[str] = None) -> list[dict]:
        """Messages of a channel, oldest first; with ``after``, only newer ones."""
        params: dict = {"limit": MESSAGES_PAGE_SIZE}
        if after:
            params["after"] = after
        messages = await self._request("GET", f"/channels/{channel_id}/messages", params=params)
        return sorted(messages or [], key=lambda m: int(m["id"]))

    async def edit_message(
        self, channel_id: str, message_id: str, content: Optional[str] = None, embeds: Optional[list[dict]] = None
    ) -> dict:
        payload: dict = {}
        if content is not None:
            payload["content"] = content
        if embeds is not None:
            payload["embeds"] = embeds
        return await self._request("PATCH", f"/channels/{channel_id}/messages/{message_id}", json=payload)

    async def open_direct_channel(self, user_id: str) -> str:
        channel_id = self._dm_channels.get(user_id)
        if channel_id is None:
            channel = await self._request("POST", "/users/@me/channels", json={"recipient_id": user_id})
            channel_id = self._dm_channels[user_id] = channel["id"]
        return channel_id

    async def send_direct_message(self, user_id: str, content: str = "", embeds: Optional[list[dict]] = None) -> dict:
        channel_id = await self.open_direct_channel(user_id)
        return await self.send_channel_message(channel_id, content, embeds)

    # Reactions

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        await self._request("PUT", f"/channels/{channel_id}/messages/{message_id}/reactions/{quote(emoji)}/@me")

    async def remove_user_reaction(self, channel_id: str, message_id: str, emoji: str, user_id: str) -> None:
        await self._request(
            "DELETE", f"/channels/{channel_id}/messages/{message_id}/reactions/{quote(emoji)}/{user_id}"
        )

    async def remove_all_reactions(self, channel_id: str, message_id: str) -> None:
        await self._request("DELETE", f"/channels/{channel_id}/messages/{message_id}/reactions")

    async def list_reaction_users(self, channel_id: str, message_id: str, emoji: str) -> list[str]:
        users = await self._request(
            "GET",
            f"/channels/{channel_id}/messages/{message_id}/reactions/{quote(emoji)}",
            params={"limit": 100},
        )
        return [user["id"] for user in users or []]

    # Guild

    async def list_guild_members(self, guild_id: str) -> list[GuildMember]:
        """Every human member of the guild, paging through the member list."""
        members: list[GuildMember] = []
        after = "0"
        while True:
            page = await self._request(
                "GET", f"/guilds/{guild_id}/members", params={"limit": MEMBERS_PAGE_SIZE, "after": after}
            )
            page = page or []
            for member in page:
                user = member.get("user") or {}
                if not user.get("id") or user.get("bot"):
                    continue
                name = member.get("nick") or user.get("global_name") or user.get("username") or ""
                members.append(GuildMember(user["id"], name, _parse_time(member.get("joined_at"))))
            if len(page) < MEMBERS_PAGE_SIZE:
                return members
            after = page[-1]["user"]["id"]

    # Subscriptions

    def on_reaction(self, handler: ReactionHandler) -> Callable[[], None]:
        self._reaction_handlers.append(handler)
        return _remove(self._reaction_handlers, handler)

    def watch_messages(self, provider: WatchProvider) -> Callable[[], None]:
        self._watch_providers.append(provider)
        return _remove(self._watch_providers, provider)

    def on_direct_message(self, handler: MessageHandler) -> Callable[[], None]:
        self._message_handlers.append(handler)
        return _remove(self._message_handlers, handler)

    def watch_inboxes(self, provider: InboxProvider) -> Callable[[], None]:
        self._inbox_providers.append(provider)
        return _remove(self._inbox_providers, provider)

    def on_member(self, handler: MemberHandler) -> Callable[[], None]:
        self._member_handlers.append(handler)
        return _remove(self._member_handlers, handler)

    # Polling

    async def poll_reactions(self) -> list[ReactionEvent]:
        """Check every watched message once and dispatch reactions not seen before."""
        watched: list[WatchedMessage] = []
        for provider in list(self._watch_providers):
            watched.extend(await provider())

        events: list[ReactionEvent] = []
        for message in watched:
            events.extend(await self._new_reactions(message))
        # Forget reactions on messages nobody watches any more.
        watched_ids = {message.message_id for message in watched}
        self._seen = {key for key in self._seen if key[0] in watched_ids}

        for event in events:
            await _dispatch(self._reaction_handlers, event, f"reaction {event.emoji} from {event.user_id}")
        return events

    async def _new_reactions(self, watched: WatchedMessage) -> list[ReactionEvent]:
        try:
            message = await self.get_message(watched.channel_id, watched.message_id)
        except ChatError as e:
            logger.warning(f"Cannot read message {watched.message_id}: {e}")
            return []

        events = []
        for reaction in message.get("reactions") or []:
            emoji = (reaction.get("emoji") or {}).get("name")
            if not emoji:
                continue
            for user_id in await self.list_reaction_users(watched.channel_id, watched.message_id, emoji):
                key = (watched.message_id, emoji, user_id)
                if user_id == self.bot_id or key in self._seen:
                    continue
                self._seen.add(key)
                logger.debug(f"Reaction {emoji} added by {user_id} to message {watched.message_id}")
                events.append(ReactionEvent(watched.channel_id, watched.message_id, emoji, user_id))
        return events

    async def poll_direct_messages(self) -> list[DirectMessage]:
        """Dispatch messages users wrote to the bot since their inbox cursor."""
        received: list[DirectMessage] = []
        for provider in list(self._inbox_providers):
            for inbox in await provider():
                try:
                    messages = await self._new_direct_messages(inbox)
                except ChatError as e:
                    logger.warning(f"Cannot read direct messages of {inbox.user_id}: {e}")
                    continue
                for message in messages:
                    await _dispatch(self._message_handlers, message, f"direct message from {message.user_id}")
                received.extend(messages)
        return received

    async def _new_direct_messages(self, inbox: Inbox) -> list[DirectMessage]:
        after = max(int(inbox.after), self._inbox_cursors.get(inbox.user_id, 0))
        channel_id = await self.open_direct_channel(inbox.user_id)
        messages = []
        for message in await self.list_messages(channel_id, after=str(after)):
            self._inbox_cursors[inbox.user_id] = max(int(message["id"]), self._inbox_cursors.get(inbox.user_id, 0))
            if (message.get("author") or {}).get("id") != inbox.user_id:
                continue
            messages.append(DirectMessage(inbox.user_id, channel_id, message["id"], message.get("content") or ""))
        return messages

    async def poll_members(self) -> list[GuildMember]:
        """Dispatch guild members not reported yet by this client."""
        if not self.guild_id or not self._member_handlers:
            return []
        members = [m for m in await self.list_guild_members(self.guild_id) if m.user_id not in self._known_members]
        for member in members:
            await _dispatch(self._member_handlers, member, f"guild member {member.user_id}")
            self._known_members.add(member.user_id)
        return members

    async def poll(self) -> None:
        """Run every poller once; a failing poller does not stop the others."""
        for poller in (self.poll_members, self.poll_direct_messages, self.poll_reactions):
            try:
                await poller()
            except Exception:
                logger.exception(f"Discord {poller.__name__} failed")

    async def _poll_loop(self, interval: float) -> None:
        while True:
            await self.poll()
            await asyncio.sleep(interval)

    def start_polling(self, interval: float = 15) -> None:
        if self._poller is None:
            self._poller = asyncio.create_task(self._poll_loop(interval), name="discord-poller")

    async def stop_polling(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            await asyncio.gather(self._poller, return_exceptions=True)
            self._poller = None
