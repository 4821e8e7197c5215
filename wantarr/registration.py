"""
Account registration: a user asks for an account, an admin approves it with a
reaction, and the media-server account is provisioned.

On Discord, guild members are recorded as users when the client sees them and
ask for an account by sending ``!register <username>`` to the bot.
"""
from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional

from .admin import AdminController
from .chat import DirectMessage, DiscordClient, GuildMember, Inbox, snowflake_at
from .database import Store
from .errors import ExternalSourceError, UserAlreadyExistsError
from .events import ChangeBus, EventKind, Subscription, UserApproved, UserRejected
from .i18n import translate
from .jellyfin import JellyfinClient
from .messaging import DISCORD, UserMessaging
from .users import User, UsersRepository

logger = logging.getLogger(__name__)

USERNAME_PATTERN = r"^[A-Za-z0-9._-]{3,32}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
REGISTER_COMMAND = "!register"


def generate_password() -> str:
    return secrets.token_urlsafe(9)


def is_valid_username(username: str) -> bool:
    return re.match(USERNAME_PATTERN, username or "") is not None


def parse_register_command(content: str) -> Optional[str]:
    """Username passed to ``!register``.

    Returns ``""`` for a bare ``!register`` and ``None`` when the message is
    not a register command at all.
    """
    parts = (content or "").strip().split(maxsplit=1)
    if not parts or parts[0].lower() != REGISTER_COMMAND:
        return None
    return parts[1].strip() if len(parts) > 1 else ""


class RegistrationService:
    def __init__(
        self,
        store: Store,
        jellyfin: JellyfinClient,
        messaging: UserMessaging,
        admin: AdminController,
        bus: ChangeBus,
        locale: str = "fr",
        users: Optional[UsersRepository] = None,
        discord: Optional[DiscordClient] = None,
    ):
        self.store = store
        self.jellyfin = jellyfin
        self.messaging = messaging
        self.admin = admin
        self.bus = bus
        self.locale = locale
        self.users = users or UsersRepository()
        self.discord = discord
        self.started_at = datetime.now(timezone.utc)
        self._subscription: Optional[Subscription] = None
        self._disposers: list[Callable[[], None]] = []

    def start(self) -> None:
        self._subscription = self.bus.listen(
            {
                EventKind.USER_APPROVED: self.on_user_approved,
                EventKind.USER_REJECTED: self.on_user_rejected,
            }
        )
        if self.discord is not None:
            self._disposers = [
                self.discord.on_member(self.on_member_joined),
                self.discord.on_direct_message(self.on_direct_message),
                self.discord.watch_inboxes(self.inboxes),
            ]

    def close(self) -> None:
        if self._subscription:
            self._subscription.close()
            self._subscription = None
        for dispose in self._disposers:
            dispose()
        self._disposers = []

    async def handle_join(self, messaging_key: str, messaging_id: str, name: str = "") -> User:
        """First contact: remember the user and say hello."""
        user = await self.users.get_by_messaging(self.store, messaging_key, messaging_id)
        if user is None:
            user = await self.users.create_from_messaging(self.store, messaging_key, messaging_id, name)
            logger.info(f"New user from {messaging_key}: {messaging_id}")
        await self.messaging.welcome(messaging_key, messaging_id)
        return user

    async def request_registration(self, messaging_key: str, messaging_id: str, username: str) -> Optional[User]:
        """Record the wanted username and ask the admins for approval.

        An invalid username is answered with a localized error and ``None``.
        """
        # Unknown messaging keys raise before anything is stored.
        self.messaging.channel(messaging_key)
        if not is_valid_username(username):
            await self.messaging.error(messaging_key, messaging_id, translate(self.locale, "error.invalid_username"))
            return None

        user = await self.users.get_by_messaging(self.store, messaging_key, messaging_id)
        if user is None:
            user = await self.users.create_from_messaging(self.store, messaging_key, messaging_id, username)
        elif not user.media_server_id and user.name != username:
            await self.users.rename(self.store, user.id, username)
            user.name = username

        await self.admin.request_registration(user, username)
        logger.info(f"Registration of {username} sent for approval")
        return user

    # Discord

    async def on_member_joined(self, member: GuildMember) -> None:
        """Record a guild member; only members who joined while running are welcomed."""
        if await self.users.get_by_messaging(self.store, DISCORD, member.user_id) is not None:
            return
        if member.joined_at is not None and member.joined_at >= self.started_at:
            await self.handle_join(DISCORD, member.user_id, member.name)
            return
        await self.users.create_from_messaging(self.store, DISCORD, member.user_id, member.name)
        logger.info(f"Recorded existing Discord member {member.name}")

    async def inboxes(self) -> list[Inbox]:
        users = await self.users.list_by_messaging_key(self.store, DISCORD)
        return [
            Inbox(user.messaging_id, user.last_message_id or snowflake_at(datetime.fromisoformat(user.created_at)))
            for user in users
        ]

    async def on_direct_message(self, message: DirectMessage) -> None:
        user = await self.users.get_by_messaging(self.store, DISCORD, message.user_id)
        if user is None:
            logger.debug(f"Direct message from unknown Discord user {message.user_id}")
            return
        # Moved first so a failing command is not replayed on the next poll.
        await self.users.set_last_message_id(self.store, user.id, message.message_id)

        username = parse_register_command(message.content)
        if username is None:
            return
        if not username:
            await self.messaging.error(DISCORD, message.user_id, translate(self.locale, "error.missing_username"))
            return
        if await self.request_registration(DISCORD, message.user_id, username) is not None:
            await self.discord.send_direct_message(message.user_id, translate(self.locale, "registration.requested"))

    # Bus listeners

    async def on_user_approved(self, event: UserApproved) -> None:
        user = await self.users.get(self.store, event.user_id)
        if user is None:
            logger.warning(f"Approved user {event.user_id} does not exist")
            return

        password = generate_password()
        try:
            if user.media_server_id:
                await self.jellyfin.reset_user_password(user.media_server_id, password)
            else:
                media_server_id = await self.jellyfin.register_user(user.name, password)
                await self.users.set_media_server_id(self.store, user.id, media_server_id)
        except UserAlreadyExistsError:
            logger.info(f"Username {user.name} is already taken")
            await self._fail_approval(user, "error.username_taken")
            return
        except ExternalSourceError:
            logger.exception(f"Error registering user {user.name}")
            await self._fail_approval(user, "error.registration_failed")
            return

        await self.messaging.registered(user.messaging_key, user.messaging_id, user.name, password)
        logger.info(f"Provisioned media server account for {user.name}")

    async def _fail_approval(self, user: User, key: str) -> None:
        # The approval message stops being watched; the user registers again.
        await self.users.clear_approval_message(self.store, user.id)
        await self.messaging.error(user.messaging_key, user.messaging_id, translate(self.locale, key))

    async def on_user_rejected(self, event: UserRejected) -> None:
        user = await self.users.get(self.store, event.user_id)
        if user is None:
            return
        await self.users.clear_approval_message(self.store, user.id)
        await self.messaging.error(
            user.messaging_key, user.messaging_id, translate(self.locale, "error.registration_rejected")
        )
