"""
Admin channel: one message and thread per request, and reactions as commands.

Request threads are opened on the request's head message, so the thread id is
also the head message id.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from .chat import DiscordClient, ReactionEvent, WatchedMessage
from .database import Store
from .errors import ChatError, InvalidTransitionError
from .events import (
    ChangeBus,
    EventKind,
    RequestCreated,
    RequestStatusChanged,
    Subscription,
    UserApproved,
    UserJoinedRequest,
    UserLeftRequest,
    UserRejected,
)
from .i18n import translate
from .ledger import AWAITING_STATUSES, Request, RequestStatus, RequestsLedger
from .medias import EPISODE
from .users import User, UsersRepository

logger = logging.getLogger(__name__)

EMOJI_BY_STATUS = {
    RequestStatus.PENDING: "⏳",
    RequestStatus.FULFILLED: "✅",
    RequestStatus.MISSING: "🫥",
    RequestStatus.REJECTED: "🚫",
    RequestStatus.CANCELED: "🗑️",
}

REQUEST_REACTIONS = {
    "🫥": RequestStatus.MISSING,
    "🚫": RequestStatus.REJECTED,
    "⏳": RequestStatus.PENDING,
    "🗑": RequestStatus.CANCELED,
}

APPROVE = "✅"
REJECT = "❌"
REGISTRATION_REACTIONS = {APPROVE: EventKind.USER_APPROVED, REJECT: EventKind.USER_REJECTED}

NEW_REQUEST_COLOR = 0x3498DB
REGISTRATION_COLOR = 0xF1C40F


def normalize_emoji(emoji: str) -> str:
    """Drop variation selectors so "🗑️" and "🗑" match."""
    return emoji.replace("\ufe0f", "")


class AdminController:
    def __init__(
        self,
        discord: DiscordClient,
        ledger: RequestsLedger,
        store: Store,
        bus: ChangeBus,
        channel_id: str,
        admin_ids: list[str],
        locale: str = "fr",
        users: Optional[UsersRepository] = None,
    ):
        self.discord = discord
        self.ledger = ledger
        self.store = store
        self.bus = bus
        self.channel_id = channel_id
        self.admin_ids = set(admin_ids)
        self.locale = locale
        self.users = users or UsersRepository()
        self._subscription: Optional[Subscription] = None
        self._disposers: list[Callable[[], None]] = []

    def _t(self, key: str, **values) -> str:
        return translate(self.locale, key, **values)

    def start(self) -> None:
        self._subscription = self.bus.listen(
            {
                EventKind.REQUEST_CREATED: self.on_request_created,
                EventKind.REQUEST_STATUS_CHANGED: self.on_status_changed,
                EventKind.USER_JOINED_REQUEST: self.on_members_changed,
                EventKind.USER_LEFT_REQUEST: self.on_members_changed,
            }
        )
        self._disposers = [
            self.discord.on_reaction(self.on_reaction),
            self.discord.watch_messages(self.watched_messages),
        ]

    def close(self) -> None:
        if self._subscription:
            self._subscription.close()
            self._subscription = None
        for dispose in self._disposers:
            dispose()
        self._disposers = []

    # Rendering

    def status_label(self, status: RequestStatus) -> str:
        return f"{EMOJI_BY_STATUS[status]} {self._t(f'status.{status.value}')}"

    def render_request(self, request: Request) -> dict:
        media = request.media
        fields = [
            {"name": "ID", "value": media.external_id or "N/A"},
            {"name": "Type", "value": self._t(f"type.{media.type}")},
            {"name": self._t("admin.year"), "value": str(media.year) if media.year else "N/A"},
        ]
        if media.type == EPISODE:
            fields.append({"name": self._t("season"), "value": str(media.season_number), "inline": True})
            fields.append({"name": self._t("episode"), "value": str(media.episode_number), "inline": True})
        names = ", ".join(ru.user.name for ru in request.users if ru.user) or "-"
        fields.append({"name": self._t("admin.users"), "value": names})
        fields.append({"name": self._t("admin.status"), "value": self.status_label(request.status)})
        return {
            "color": NEW_REQUEST_COLOR,
            "title": self._t("admin.new_request", title=media.title),
            "description": self._t("admin.new_request.description"),
            "fields": fields,
        }

    def thread_name(self, request: Request) -> str:
        media = request.media
        title = f"{media.title} ({media.year})" if media.year else media.title
        if media.type == EPISODE:
            title += f" S{media.season_number:02d}E{media.episode_number:02d}"
        return self._t("admin.thread", title=title)

    # Bus listeners

    async def on_request_created(self, event: RequestCreated) -> None:
        request = await self.ledger.get(event.request_id)
        if request is None:
            logger.debug(f"Request {event.request_id} vanished before its thread was opened")
            return
        if request.thread_id:
            return

        message = await self.discord.send_channel_message(self.channel_id, embeds=[self.render_request(request)])
        await self.discord.add_reaction(self.channel_id, message["id"], EMOJI_BY_STATUS[request.status])
        thread_id = await self.discord.start_thread(self.channel_id, message["id"], self.thread_name(request))
        await self.ledger.attach_thread(request.id, thread_id)
        logger.info(f"Opened admin thread {thread_id} for {request.media.title}")

    async def on_status_changed(self, event: RequestStatusChanged) -> None:
        request = await self.ledger.get(event.request_id)
        if request is None or not request.thread_id:
            logger.debug(f"No admin thread for request {event.request_id}")
            return

        status = RequestStatus(event.new_status)
        await self.discord.send_thread_message(
            request.thread_id,
            self._t("admin.status_updated", emoji=EMOJI_BY_STATUS[status], label=self._t(f"status.{status.value}")),
        )
        await self.discord.edit_message(self.channel_id, request.thread_id, embeds=[self.render_request(request)])
        await self.discord.remove_all_reactions(self.channel_id, request.thread_id)
        await self.discord.add_reaction(self.channel_id, request.thread_id, EMOJI_BY_STATUS[request.status])

    async def on_members_changed(self, event: UserJoinedRequest | UserLeftRequest) -> None:
        request = await self.ledger.get(event.request_id)
        if request is None or not request.thread_id:
            return
        await self.discord.edit_message(self.channel_id, request.thread_id, embeds=[self.render_request(request)])

    # Registrations

    async def request_registration(self, user: User, username: str) -> str:
        """Post an approval message for a registration; returns its message id."""
        message = await self.discord.send_channel_message(
            self.channel_id,
            embeds=[
                {
                    "color": REGISTRATION_COLOR,
                    "title": self._t("admin.registration", username=username),
                    "description": self._t("admin.registration.description"),
                    "fields": [{"name": self._t("admin.channel"), "value": f"{user.messaging_key}: {user.messaging_id}"}],
                }
            ],
        )
        await self.discord.add_reaction(self.channel_id, message["id"], APPROVE)
        await self.discord.add_reaction(self.channel_id, message["id"], REJECT)
        await self.users.link_approval_message(self.store, user.id, message["id"])
        return message["id"]

    # Reactions

    async def watched_messages(self) -> list[WatchedMessage]:
        requests = await self.ledger.list_with_threads(AWAITING_STATUSES)
        pending_users = await self.users.list_pending_approvals(self.store)
        return [WatchedMessage(self.channel_id, r.thread_id) for r in requests] + [
            WatchedMessage(self.channel_id, u.approval_message_id) for u in pending_users
        ]

    async def on_reaction(self, event: ReactionEvent) -> None:
        if event.user_id not in self.admin_ids:
            logger.warning(f"Ignoring reaction {event.emoji} from non-admin {event.user_id}")
            return
        emoji = normalize_emoji(event.emoji)

        request = await self.ledger.get_by_thread_id(event.message_id)
        if request is not None:
            if await self._apply_request_reaction(request, emoji):
                await self._consume(event)
            return

        user = await self.users.get_by_approval_message_id(self.store, event.message_id)
        if user is not None:
            if self._apply_registration_reaction(user, emoji):
                await self._consume(event)
            return

        logger.warning(f"Reaction {event.emoji} on unknown message {event.message_id}")

    async def _consume(self, event: ReactionEvent) -> None:
        """Take back a handled admin reaction, so it is not applied again after a restart."""
        try:
            await self.discord.remove_user_reaction(event.channel_id, event.message_id, event.emoji, event.user_id)
        except ChatError as e:
            logger.debug(f"Could not remove reaction {event.emoji} from {event.message_id}: {e}")

    async def _apply_request_reaction(self, request: Request, emoji: str) -> bool:
        """Returns whether the reaction was a request command."""
        status = REQUEST_REACTIONS.get(emoji)
        if status is None:
            logger.warning(f"Unknown reaction {emoji} on request {request.id}")
            return False
        try:
            await self.ledger.update_status(request.id, status)
        except InvalidTransitionError as e:
            logger.warning(f"Admin reaction refused on {request.media.title}: {e}")
            return True
        logger.info(f"Admin set {request.media.title} to {status.value}")
        return True

    def _apply_registration_reaction(self, user: User, emoji: str) -> bool:
        kind = REGISTRATION_REACTIONS.get(emoji)
        if kind is None:
            logger.warning(f"Unknown reaction {emoji} on registration of {user.name}")
            return False
        event = UserApproved(user_id=user.id) if kind == EventKind.USER_APPROVED else UserRejected(user_id=user.id)
        self.bus.emit(kind, event)
        logger.info(f"Admin {'approved' if kind == EventKind.USER_APPROVED else 'rejected'} {user.name}")
        return True
