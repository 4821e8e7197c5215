"""Tell users about their requests: status changes and newly joined requests."""
from __future__ import annotations

import logging
from typing import Optional

from .events import ChangeBus, EventKind, RequestStatusChanged, Subscription, UserJoinedRequest
from .ledger import Request, RequestStatus, RequestsLedger
from .messaging import EMAIL, UserMessaging
from .users import User

logger = logging.getLogger(__name__)

CHAT_STATUSES = frozenset(RequestStatus)
EMAIL_STATUSES = frozenset(
    {RequestStatus.PENDING, RequestStatus.FULFILLED, RequestStatus.MISSING, RequestStatus.REJECTED}
)


def should_notify(messaging_key: str, old_status: Optional[RequestStatus], new_status: RequestStatus) -> bool:
    """Chat hears about every status; email skips cancellations and reopened requests."""
    if messaging_key != EMAIL:
        return new_status in CHAT_STATUSES
    if new_status not in EMAIL_STATUSES:
        return False
    return not (old_status is not None and new_status == RequestStatus.PENDING)


class UserNotifier:
    def __init__(self, ledger: RequestsLedger, messaging: UserMessaging, bus: ChangeBus):
        self.ledger = ledger
        self.messaging = messaging
        self.bus = bus
        self._subscription: Optional[Subscription] = None

    def start(self) -> None:
        self._subscription = self.bus.listen(
            {
                EventKind.REQUEST_STATUS_CHANGED: self.on_status_changed,
                EventKind.USER_JOINED_REQUEST: self.on_user_joined,
            }
        )

    def close(self) -> None:
        if self._subscription:
            self._subscription.close()
            self._subscription = None

    async def on_status_changed(self, event: RequestStatusChanged) -> None:
        request = await self.ledger.get(event.request_id)
        if request is None:
            return
        old_status = RequestStatus(event.old_status)
        for request_user in request.users:
            if request_user.user is not None:
                await self._notify(request_user.user, request, old_status)

    async def on_user_joined(self, event: UserJoinedRequest) -> None:
        request = await self.ledger.get(event.request_id)
        if request is None:
            return
        for request_user in request.users:
            if request_user.user_id == event.user_id and request_user.user is not None:
                await self._notify(request_user.user, request, None)

    async def _notify(self, user: User, request: Request, old_status: Optional[RequestStatus]) -> None:
        if not should_notify(user.messaging_key, old_status, request.status):
            logger.debug(f"Not notifying {user.name} of {request.status.value} by {user.messaging_key}")
            return
        try:
            await self.messaging.request_updated(user.messaging_key, user.messaging_id, request)
        except Exception:
            logger.exception(f"Could not notify {user.name} about {request.media.title}")
