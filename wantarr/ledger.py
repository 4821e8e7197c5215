"""
Request ledger.

Owns the ``requests`` and ``request_users`` tables: which medias are wanted,
by whom and why, and where each request stands in its status lifecycle.

Reconciliation is split in two steps. Planners are pure functions comparing
what is tracked with what is wanted (or available) and returning an immutable
plan. The ledger then applies a plan inside a single transaction, so a failure
leaves no partial attribution behind. Change notifications are attached to the
transaction and only reach the bus once it commits.
"""
from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from .database import Connection, Store, Transaction, upsert_query, utcnow
from .errors import InvalidTransitionError, RequestNotFoundError
from .events import EventKind
from .medias import Media, MediaInfo, MediasRepository, identify
from .users import User

logger = logging.getLogger(__name__)


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    MISSING = "missing"
    REJECTED = "rejected"
    CANCELED = "canceled"


class RequestKind(str, enum.Enum):
    WATCHLISTED = "WATCHLISTED"
    LISTED = "LISTED"
    HIGH_RATED = "HIGH_RATED"
    PROGRESS = "PROGRESS"


TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset(
        {RequestStatus.FULFILLED, RequestStatus.MISSING, RequestStatus.REJECTED, RequestStatus.CANCELED}
    ),
    RequestStatus.MISSING: frozenset({RequestStatus.PENDING, RequestStatus.FULFILLED, RequestStatus.REJECTED}),
    RequestStatus.FULFILLED: frozenset(),
    RequestStatus.REJECTED: frozenset({RequestStatus.PENDING}),
    RequestStatus.CANCELED: frozenset({RequestStatus.PENDING}),
}

# Statuses the availability pass may move to fulfilled.
AWAITING_STATUSES = (RequestStatus.PENDING, RequestStatus.MISSING)
# Statuses reopened to pending when a user asks for the media again.
REOPENABLE_STATUSES = (RequestStatus.MISSING, RequestStatus.REJECTED, RequestStatus.CANCELED)


def can_transition(old: RequestStatus, new: RequestStatus) -> bool:
    return new in TRANSITIONS[old]


@dataclass
class RequestUser:
    request_id: str
    user_id: str
    reasons: frozenset[RequestKind]
    created_at: str
    updated_at: str
    user: Optional[User] = None


@dataclass
class Request:
    media_id: str
    status: RequestStatus
    thread_id: Optional[str]
    created_at: str
    updated_at: str
    media: Optional[Media] = None
    users: list[RequestUser] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.media_id


@dataclass(frozen=True)
class TargetedSyncPlan:
    user_id: str
    kind: RequestKind
    to_add: tuple[MediaInfo, ...]
    to_remove: tuple[Request, ...]

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def plan_targeted_sync(
    existing: Iterable[Request],
    desired: Iterable[MediaInfo],
    user_id: str,
    kind: RequestKind,
) -> TargetedSyncPlan:
    """Diff the requests attributed to (user, kind) against the wanted medias."""
    existing_by_key = {identify(request.media): request for request in existing}
    desired_by_key: dict = {}
    for info in desired:
        desired_by_key.setdefault(identify(info), info)

    return TargetedSyncPlan(
        user_id=user_id,
        kind=kind,
        to_add=tuple(info for key, info in desired_by_key.items() if key not in existing_by_key),
        to_remove=tuple(request for key, request in existing_by_key.items() if key not in desired_by_key),
    )


def plan_fulfilments(tracked: Iterable[Request], library: Iterable[MediaInfo]) -> tuple[Request, ...]:
    """Tracked requests still awaiting a media that is now in the library."""
    available = {identify(info) for info in library}
    return tuple(
        request
        for request in tracked
        if request.status in AWAITING_STATUSES and identify(request.media) in available
    )


def _encode_reasons(reasons: Iterable[RequestKind]) -> str:
    return json.dumps(sorted(RequestKind(r).value for r in reasons))


def _decode_reasons(raw: str) -> frozenset[RequestKind]:
    return frozenset(RequestKind(r) for r in json.loads(raw))


_REQUEST_SELECT = """
    SELECT r.media_id, r.status, r.thread_id, r.created_at, r.updated_at,
           m.id AS m_id, m.external_id AS m_external_id, m.type AS m_type, m.title AS m_title,
           m.year AS m_year, m.season_number AS m_season_number, m.episode_number AS m_episode_number,
           m.created_at AS m_created_at, m.updated_at AS m_updated_at
    FROM requests r
    JOIN medias m ON m.id = r.media_id
"""


def _request_from_row(row: dict) -> Request:
    media = Media.from_row({key[2:]: value for key, value in row.items() if key.startswith("m_")})
    return Request(
        media_id=row["media_id"],
        status=RequestStatus(row["status"]),
        thread_id=row["thread_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        media=media,
    )


def _request_user_from_row(row: dict) -> RequestUser:
    user = None
    if row.get("u_id"):
        user = User(
            id=row["u_id"],
            name=row["u_name"],
            messaging_key=row["u_messaging_key"],
            messaging_id=row["u_messaging_id"],
            media_server_id=row["u_media_server_id"],
            approval_message_id=row["u_approval_message_id"],
            created_at=row["u_created_at"],
            updated_at=row["u_updated_at"],
        )
    return RequestUser(
        request_id=row["request_id"],
        user_id=row["user_id"],
        reasons=_decode_reasons(row["reasons"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        user=user,
    )


class RequestsLedger:
    def __init__(self, store: Store, medias: Optional[MediasRepository] = None):
        self.store = store
        self.medias = medias or MediasRepository()

    # Reads

    async def get(self, request_id: str, conn: Optional[Connection] = None) -> Optional[Request]:
        """Full request state: media and attributed users."""
        conn = conn or self.store
        row = await conn.fetch_one(f"{_REQUEST_SELECT} WHERE r.media_id = ?", (request_id,))
        if not row:
            return None
        request = _request_from_row(row)
        request.users = await self.list_users(request_id, conn)
        return request

    async def get_by_thread_id(self, thread_id: str) -> Optional[Request]:
        row = await self.store.fetch_one(f"{_REQUEST_SELECT} WHERE r.thread_id = ?", (thread_id,))
        return _request_from_row(row) if row else None

    async def list(self, status: Optional[RequestStatus] = None) -> list[Request]:
        if status:
            rows = await self.store.fetch_all(
                f"{_REQUEST_SELECT} WHERE r.status = ? ORDER BY r.created_at DESC", (status.value,)
            )
        else:
            rows = await self.store.fetch_all(f"{_REQUEST_SELECT} ORDER BY r.created_at DESC")
        return [_request_from_row(row) for row in rows]

    async def list_by_status(
        self, statuses: Sequence[RequestStatus], conn: Optional[Connection] = None
    ) -> list[Request]:
        conn = conn or self.store
        placeholders = ", ".join("?" for _ in statuses)
        rows = await conn.fetch_all(
            f"{_REQUEST_SELECT} WHERE r.status IN ({placeholders}) ORDER BY r.created_at",
            tuple(RequestStatus(s).value for s in statuses),
        )
        return [_request_from_row(row) for row in rows]

    async def list_with_threads(self, statuses: Optional[Sequence[RequestStatus]] = None) -> list[Request]:
        rows = await self.store.fetch_all(f"{_REQUEST_SELECT} WHERE r.thread_id IS NOT NULL")
        requests = [_request_from_row(row) for row in rows]
        if statuses is not None:
            requests = [r for r in requests if r.status in statuses]
        return requests

    async def list_by_user_and_kind(
        self, user_id: str, kind: RequestKind, conn: Optional[Connection] = None
    ) -> list[Request]:
        """Requests for which ``kind`` is one of the user's reasons."""
        conn = conn or self.store
        rows = await conn.fetch_all(
            f"""
            {_REQUEST_SELECT}
            JOIN request_users ru ON ru.request_id = r.media_id
            WHERE ru.user_id = ?
            ORDER BY r.created_at
            """,
            (user_id,),
        )
        requests = [_request_from_row(row) for row in rows]
        if not requests:
            return []
        reasons = await conn.fetch_all("SELECT request_id, reasons FROM request_users WHERE user_id = ?", (user_id,))
        wanted = {row["request_id"] for row in reasons if kind in _decode_reasons(row["reasons"])}
        return [request for request in requests if request.id in wanted]

    async def list_users(self, request_id: str, conn: Optional[Connection] = None) -> list[RequestUser]:
        conn = conn or self.store
        rows = await conn.fetch_all(
            """
            SELECT ru.*,
                   u.id AS u_id, u.name AS u_name, u.messaging_key AS u_messaging_key,
                   u.messaging_id AS u_messaging_id, u.media_server_id AS u_media_server_id,
                   u.approval_message_id AS u_approval_message_id,
                   u.created_at AS u_created_at, u.updated_at AS u_updated_at
            FROM request_users ru
            LEFT JOIN users u ON u.id = ru.user_id
            WHERE ru.request_id = ?
            ORDER BY ru.created_at DESC
            """,
            (request_id,),
        )
        return [_request_user_from_row(row) for row in rows]

    # Targeted sync

    async def sync_medias_for_user_and_kind(
        self, user: User, kind: RequestKind, desired: Sequence[MediaInfo]
    ) -> TargetedSyncPlan:
        """Make the requests attributed to (user, kind) match ``desired``.

        Runs in one transaction: new requests are inserted, then linked to the
        user, then stale attributions are unlinked. Calling it again with the
        same medias changes nothing and publishes nothing.
        """
        async with self.store.transaction() as tx:
            existing = await self.list_by_user_and_kind(user.id, kind, tx)
            plan = plan_targeted_sync(existing, desired, user.id, kind)
            logger.info(
                f"Syncing {user.name} {kind.value}: {len(desired)} wanted, {len(existing)} tracked, "
                f"{len(plan.to_add)} new, {len(plan.to_remove)} extra"
            )
            if not plan.is_empty:
                await self._apply_targeted_sync(tx, plan)
        return plan

    async def _apply_targeted_sync(self, tx: Transaction, plan: TargetedSyncPlan) -> None:
        request_ids = [await self._insert_request(tx, info) for info in plan.to_add]
        for request_id in request_ids:
            await self._link_user(tx, request_id, plan.user_id, plan.kind)
        for request in plan.to_remove:
            await self._unlink_user(tx, request, plan.user_id, plan.kind)

    async def _insert_request(self, tx: Transaction, info: MediaInfo) -> str:
        media = await self.medias.create(tx, info)
        now = utcnow()
        sql, params = upsert_query(
            "requests",
            {
                "media_id": media.id,
                "status": RequestStatus.PENDING.value,
                "created_at": now,
                "updated_at": now,
            },
            conflict_keys=("media_id",),
        )
        if await tx.fetch_one(sql, params):
            tx.notify(EventKind.REQUEST_CREATED.value, {"request_id": media.id})
            return media.id

        row = await tx.fetch_one("SELECT status FROM requests WHERE media_id = ?", (media.id,))
        status = RequestStatus(row["status"])
        if status in REOPENABLE_STATUSES:
            await self._set_status(tx, media.id, status, RequestStatus.PENDING)
        return media.id

    async def _link_user(self, tx: Transaction, request_id: str, user_id: str, kind: RequestKind) -> None:
        row = await tx.fetch_one(
            "SELECT reasons FROM request_users WHERE request_id = ? AND user_id = ?",
            (request_id, user_id),
        )
        now = utcnow()
        if row is None:
            await tx.execute(
                """
                INSERT INTO request_users (request_id, user_id, reasons, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (request_id, user_id, _encode_reasons([kind]), now, now),
            )
            tx.notify(EventKind.USER_JOINED_REQUEST.value, {"request_id": request_id, "user_id": user_id})
            return

        reasons = _decode_reasons(row["reasons"])
        if kind not in reasons:
            await tx.execute(
                "UPDATE request_users SET reasons = ?, updated_at = ? WHERE request_id = ? AND user_id = ?",
                (_encode_reasons(reasons | {kind}), now, request_id, user_id),
            )

    async def _unlink_user(self, tx: Transaction, request: Request, user_id: str, kind: RequestKind) -> None:
        row = await tx.fetch_one(
            "SELECT reasons FROM request_users WHERE request_id = ? AND user_id = ?",
            (request.id, user_id),
        )
        if row is None:
            return

        reasons = _decode_reasons(row["reasons"]) - {kind}
        if reasons:
            await tx.execute(
                "UPDATE request_users SET reasons = ?, updated_at = ? WHERE request_id = ? AND user_id = ?",
                (_encode_reasons(reasons), utcnow(), request.id, user_id),
            )
            return

        await tx.execute("DELETE FROM request_users WHERE request_id = ? AND user_id = ?", (request.id, user_id))
        tx.notify(EventKind.USER_LEFT_REQUEST.value, {"request_id": request.id, "user_id": user_id})

        remaining = await tx.fetch_one(
            "SELECT COUNT(*) AS n FROM request_users WHERE request_id = ?", (request.id,)
        )
        if remaining["n"] == 0 and request.status in AWAITING_STATUSES:
            # Nobody ever got this media: the request disappears without an event.
            await tx.execute("DELETE FROM requests WHERE media_id = ?", (request.id,))
            logger.debug(f"Dropped unwanted request {request.id} ({request.media.title})")

    # Availability

    async def sync_collected_medias(self, library: Iterable[MediaInfo]) -> list[Request]:
        """Fulfil pending/missing requests whose media is in the library."""
        library = list(library)
        async with self.store.transaction() as tx:
            tracked = await self.list_by_status(AWAITING_STATUSES, tx)
            fulfilled = plan_fulfilments(tracked, library)
            for request in fulfilled:
                await self._set_status(tx, request.id, request.status, RequestStatus.FULFILLED)
        logger.info(f"Library holds {len(library)} medias, fulfilled {len(fulfilled)} of {len(tracked)} requests")
        return list(fulfilled)

    # Status

    async def update_status(self, request_id: str, status: RequestStatus) -> Request:
        status = RequestStatus(status)
        async with self.store.transaction() as tx:
            row = await tx.fetch_one("SELECT status FROM requests WHERE media_id = ?", (request_id,))
            if row is None:
                raise RequestNotFoundError(request_id)
            old_status = RequestStatus(row["status"])
            if old_status != status:
                if not can_transition(old_status, status):
                    raise InvalidTransitionError(old_status.value, status.value)
                await self._set_status(tx, request_id, old_status, status)
            request = await self.get(request_id, tx)
        return request

    async def _set_status(
        self, tx: Transaction, request_id: str, old_status: RequestStatus, new_status: RequestStatus
    ) -> None:
        await tx.execute(
            "UPDATE requests SET status = ?, updated_at = ? WHERE media_id = ?",
            (new_status.value, utcnow(), request_id),
        )
        tx.notify(
            EventKind.REQUEST_STATUS_CHANGED.value,
            {"request_id": request_id, "old_status": old_status.value, "new_status": new_status.value},
        )

    async def attach_thread(self, request_id: str, thread_id: str) -> None:
        await self.store.execute(
            "UPDATE requests SET thread_id = ?, updated_at = ? WHERE media_id = ?",
            (thread_id, utcnow(), request_id),
        )
