"""
User-facing messages.

``UserMessaging`` routes a user's ``messaging_key`` (``discord`` or ``email``)
to the channel that reaches them.
"""
from __future__ import annotations

import html
import logging
from typing import Optional, Protocol

from .chat import DiscordClient
from .email_queue import EmailBatcher
from .errors import WantarrError
from .i18n import translate
from .ledger import Request, RequestStatus
from .mailer import Mailer
from .medias import EPISODE

logger = logging.getLogger(__name__)

DISCORD = "discord"
EMAIL = "email"

COLOR_BY_STATUS = {
    RequestStatus.PENDING: 0x3498DB,
    RequestStatus.FULFILLED: 0x2ECC71,
    RequestStatus.MISSING: 0x94312D,
    RequestStatus.REJECTED: 0xE74C3C,
    RequestStatus.CANCELED: 0x94312D,
}


def describe(request: Request, locale: str) -> str:
    """One-line summary: title, year, and episode numbers when relevant."""
    media = request.media
    label = f"{media.title} ({media.year})" if media.year else media.title
    if media.type == EPISODE:
        label += " - " + translate(locale, "episode.label", season=media.season_number, episode=media.episode_number)
    return label


class UserChannel(Protocol):
    async def welcome(self, address: str) -> None:
        ...

    async def error(self, address: str, message: str) -> None:
        ...

    async def registered(self, address: str, username: str, password: str) -> None:
        ...

    async def request_updated(self, address: str, request: Request) -> None:
        ...


class DiscordUserChannel:
    def __init__(self, discord: DiscordClient, locale: str = "fr", service_name: str = "Wantarr", service_url: str = ""):
        self.discord = discord
        self.locale = locale
        self.service_name = service_name
        self.service_url = service_url

    def _t(self, key: str, **values) -> str:
        return translate(self.locale, key, service=self.service_name, **values)

    async def welcome(self, address: str) -> None:
        await self.discord.send_direct_message(address, self._t("welcome.discord"))

    async def error(self, address: str, message: str) -> None:
        await self.discord.send_direct_message(address, self._t("error", message=message))

    async def registered(self, address: str, username: str, password: str) -> None:
        text = self._t("registered", username=username, password=password, url=self.service_url)
        await self.discord.send_direct_message(address, f"**{self._t('registered.title')}**\n{text}")

    def request_embed(self, request: Request) -> dict:
        media = request.media
        embed = {
            "color": COLOR_BY_STATUS[request.status],
            "title": f"{media.title} ({media.year})" if media.year else media.title,
            "description": self._t(f"description.{request.status.value}"),
            "fields": [],
        }
        if media.type == EPISODE:
            embed["fields"] = [
                {"name": self._t("season"), "value": str(media.season_number), "inline": True},
                {"name": self._t("episode"), "value": str(media.episode_number), "inline": True},
            ]
        return embed

    async def request_updated(self, address: str, request: Request) -> None:
        await self.discord.send_direct_message(address, embeds=[self.request_embed(request)])


class EmailUserChannel:
    """Immediate emails for account events; request updates go through the batcher."""

    def __init__(self, mailer: Mailer, batcher: Optional[EmailBatcher] = None, locale: str = "fr", service_name: str = "Wantarr", service_url: str = ""):
        self.mailer = mailer
        self.batcher = batcher
        self.locale = locale
        self.service_name = service_name
        self.service_url = service_url

    def _t(self, key: str, **values) -> str:
        return translate(self.locale, key, service=self.service_name, **values)

    async def welcome(self, address: str) -> None:
        text = self._t("welcome")
        await self.mailer.send(address, self.service_name, text, f"<p>{html.escape(text)}</p>")

    async def error(self, address: str, message: str) -> None:
        text = self._t("error", message=message)
        await self.mailer.send(address, self.service_name, text, f"<p>{html.escape(text)}</p>")

    async def registered(self, address: str, username: str, password: str) -> None:
        title = self._t("registered.title")
        text = self._t("registered", username=username, password=password, url=self.service_url)
        body = "<br>".join(html.escape(line) for line in text.splitlines())
        await self.mailer.send(address, title, text, f"<h1>{html.escape(title)}</h1><p>{body}</p>")

    async def request_updated(self, address: str, request: Request) -> None:
        if self.batcher is None:
            await self.send_batch(address, [request])
        else:
            self.batcher.add(address, request)

    async def send_batch(self, address: str, requests: list[Request]) -> None:
        """One email listing every request of the batch with its latest status."""
        lines = [f"{describe(r, self.locale)}: {self._t(f'status.{r.status.value}')}" for r in requests]
        intro = self._t("update.intro")
        text = "\n".join([intro, ""] + [f"- {line}" for line in lines])
        items = "".join(f"<li>{html.escape(line)}</li>" for line in lines)
        await self.mailer.send(address, self._t("update.subject"), text, f"<p>{html.escape(intro)}</p><ul>{items}</ul>")


class UserMessaging:
    def __init__(self, channels: dict[str, UserChannel]):
        self.channels = channels

    def channel(self, messaging_key: str) -> UserChannel:
        channel = self.channels.get(messaging_key)
        if channel is None:
            raise WantarrError(f"No messaging channel for {messaging_key!r}")
        return channel

    async def welcome(self, key: str, address: str) -> None:
        await self.channel(key).welcome(address)

    async def error(self, key: str, address: str, message: str) -> None:
        await self.channel(key).error(address, message)

    async def registered(self, key: str, address: str, username: str, password: str) -> None:
        await self.channel(key).registered(address, username, password)

    async def request_updated(self, key: str, address: str, request: Request) -> None:
        await self.channel(key).request_updated(address, request)
