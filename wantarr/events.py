"""
Typed in-process change bus.

Channels carry JSON documents. The store publishes ledger changes after commit;
the admin controller publishes user approval decisions. Each channel has its
own FIFO queue and worker, so delivery order within a channel is publish order
while channels progress independently. Delivery is at-most-once: a handler
failure is logged and the event is dropped.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Mapping

from pydantic import BaseModel

from .parsing import Err, parse_json

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    REQUEST_CREATED = "request_created"
    REQUEST_STATUS_CHANGED = "request_status_changed"
    USER_JOINED_REQUEST = "user_joined_request"
    USER_LEFT_REQUEST = "user_left_request"
    USER_APPROVED = "user_approved"
    USER_REJECTED = "user_rejected"


class RequestCreated(BaseModel):
    request_id: str


class RequestStatusChanged(BaseModel):
    request_id: str
    old_status: str
    new_status: str


class UserJoinedRequest(BaseModel):
    request_id: str
    user_id: str


class UserLeftRequest(BaseModel):
    request_id: str
    user_id: str


class UserApproved(BaseModel):
    user_id: str


class UserRejected(BaseModel):
    user_id: str


EVENT_PAYLOADS: dict[EventKind, type[BaseModel]] = {
    EventKind.REQUEST_CREATED: RequestCreated,
    EventKind.REQUEST_STATUS_CHANGED: RequestStatusChanged,
    EventKind.USER_JOINED_REQUEST: UserJoinedRequest,
    EventKind.USER_LEFT_REQUEST: UserLeftRequest,
    EventKind.USER_APPROVED: UserApproved,
    EventKind.USER_REJECTED: UserRejected,
}

Handler = Callable[[BaseModel], Awaitable[None]]
Disposer = Callable[[], None]


class Subscription:
    """A group of handlers registered together and disposed together."""

    def __init__(self, disposers: list[Disposer]):
        self._disposers = disposers

    def close(self) -> None:
        for dispose in self._disposers:
            dispose()
        self._disposers = []


class ChangeBus:
    def __init__(self):
        self._handlers: dict[EventKind, list[Handler]] = {kind: [] for kind in EventKind}
        self._queues: dict[EventKind, asyncio.Queue] = {}
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        for kind in EventKind:
            queue: asyncio.Queue = asyncio.Queue()
            self._queues[kind] = queue
            self._workers.append(asyncio.create_task(self._work(kind, queue), name=f"bus-{kind.value}"))

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queues = {}

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        for queue in list(self._queues.values()):
            await queue.join()

    def publish(self, channel: str, payload: str) -> None:
        """Publish a raw JSON payload on a named channel."""
        try:
            kind = EventKind(channel)
        except ValueError:
            logger.warning(f"Dropping event on unknown channel {channel!r}")
            return
        queue = self._queues.get(kind)
        if queue is None:
            logger.warning(f"Bus not started, dropping {kind.value} event")
            return
        queue.put_nowait(payload)

    def emit(self, kind: EventKind, event: BaseModel) -> None:
        self.publish(kind.value, event.model_dump_json())

    def subscribe(self, kind: EventKind, handler: Handler) -> Disposer:
        self._handlers[kind].append(handler)

        def dispose() -> None:
            if handler in self._handlers[kind]:
                self._handlers[kind].remove(handler)

        return dispose

    def listen(self, handlers: Mapping[EventKind, Handler]) -> Subscription:
        return Subscription([self.subscribe(kind, handler) for kind, handler in handlers.items()])

    async def _work(self, kind: EventKind, queue: asyncio.Queue) -> None:
        model = EVENT_PAYLOADS[kind]
        while True:
            payload = await queue.get()
            try:
                await self._dispatch(kind, model, payload)
            finally:
                queue.task_done()

    async def _dispatch(self, kind: EventKind, model: type[BaseModel], payload: str) -> None:
        parsed = parse_json(model, payload)
        if isinstance(parsed, Err):
            logger.warning(f"Dropping malformed {kind.value} event: {parsed.error}")
            return
        for handler in list(self._handlers[kind]):
            try:
                await handler(parsed.value)
            except Exception:
                logger.exception(f"Handler {getattr(handler, '__qualname__', handler)} failed on {kind.value}")
