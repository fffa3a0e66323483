"""Friend graph derived from friend requests.

Friendship is an ``accepted`` request touching both accounts; there is
no separate edge list.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from meetup.clock import DAY_MS, Clock
from meetup.collaborators import NotificationSink, notify_quietly
from meetup.errors import DuplicateError, InvalidError, NotFoundError
from meetup.social.models import FriendRequest, RequestMetadata
from meetup.users.codes import new_request_id

if TYPE_CHECKING:
    from meetup.config import Settings
    from meetup.users.models import Account
    from meetup.users.service import UserDirectory

logger = structlog.get_logger()


def _find_request(requests: list[FriendRequest], request_id: str) -> FriendRequest:
    for request in requests:
        if request.id == request_id:
            return request
    msg = "Friend request not found"
    raise NotFoundError(msg)


def _pair_request(requests: list[FriendRequest], a: str, b: str) -> FriendRequest | None:
    return next((r for r in requests if r.links(a, b)), None)


def _refuse_existing(existing: FriendRequest | None) -> None:
    if existing is None:
        return
    if existing.status == "pending":
        msg = "Request already sent"
        raise DuplicateError(msg)
    if existing.status == "accepted":
        msg = "Already friends"
        raise DuplicateError(msg)
    msg = "Request was rejected earlier"
    raise DuplicateError(msg)


class FriendGraph:
    def __init__(
        self,
        directory: UserDirectory,
        *,
        settings: Settings,
        clock: Clock,
        notifications: NotificationSink | None = None,
    ) -> None:
        self.directory = directory
        self.requests = directory.requests
        self.settings = settings
        self.clock = clock
        self.notifications = notifications

    async def all_requests(self) -> list[FriendRequest]:
        return await self.requests.load_all()

    async def send_request(self, from_user_id: str, to_user_id: str, *, via_qr: bool = False) -> FriendRequest:
        """
        Create a pending request.

        Raises:
            InvalidError: request to self.
            NotFoundError: either account is missing.
            DuplicateError: the pair already has a pending, accepted or rejected request.
        """
        if from_user_id == to_user_id:
            msg = "You cannot add yourself as a friend"
            raise InvalidError(msg)
        sender = await self.directory.get(from_user_id)
        await self.directory.get(to_user_id)

        now = self.clock()
        request = FriendRequest(
            id=new_request_id(now),
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            timestamp=now,
            metadata=RequestMetadata(via_qr=via_qr, scanned_at=now if via_qr else None),
        )

        def append(requests: list[FriendRequest]) -> None:
            _refuse_existing(_pair_request(requests, from_user_id, to_user_id))
            requests.append(request)

        await self.requests.mutate(append)
        await self.directory.increment_stat(from_user_id, "sentRequests")
        if via_qr:
            await self.directory.increment_stat(from_user_id, "qrInvitations")
            await self.directory.increment_stat(to_user_id, "qrInvitationsReceived")
        logger.info("friend_request_sent", request_id=request.id, from_user_id=from_user_id, to_user_id=to_user_id, via_qr=via_qr)
        await notify_quietly(
            self.notifications, "New friend request", f"{sender.nickname} wants to add you as a friend", "friend_request"
        )
        return request

    async def send_request_via_qr(self, from_user_id: str, to_user_id: str) -> FriendRequest:
        return await self.send_request(from_user_id, to_user_id, via_qr=True)

    async def _transition(self, request_id: str, status: str) -> FriendRequest:
        now = self.clock()

        def apply(requests: list[FriendRequest]) -> FriendRequest:
            request = _find_request(requests, request_id)
            if request.status != "pending":
                msg = f"Request is already {request.status}"
                raise InvalidError(msg)
            request.status = status
            if status == "accepted":
                request.accepted_at = now
            else:
                request.rejected_at = now
            return request

        return await self.requests.mutate(apply)

    async def accept_request(self, request_id: str) -> FriendRequest:
        """pending -> accepted; both parties' ``friendsCount`` goes up."""
        request = await self._transition(request_id, "accepted")
        await self.directory.increment_stat(request.from_user_id, "friendsCount")
        await self.directory.increment_stat(request.to_user_id, "friendsCount")
        logger.info("friend_request_accepted", request_id=request_id)
        await notify_quietly(self.notifications, "Friend request accepted", "You have a new friend", "friend_accepted")
        return request

    async def reject_request(self, request_id: str) -> FriendRequest:
        """pending -> rejected; blocks new requests for the pair until swept."""
        request = await self._transition(request_id, "rejected")
        logger.info("friend_request_rejected", request_id=request_id)
        return request

    async def get_friends_of(self, user_id: str) -> list[Account]:
        requests = await self.all_requests()
        accounts = {a.id: a for a in await self.directory.all()}
        friends = []
        for request in requests:
            if request.status == "accepted" and request.involves(user_id):
                friend = accounts.get(request.other(user_id))
                if friend is not None:
                    friends.append(friend)
        return friends

    async def get_incoming_requests(self, user_id: str) -> list[dict[str, Any]]:
        """Pending requests to ``user_id`` with a summary of each sender."""
        accounts = {a.id: a for a in await self.directory.all()}
        incoming = []
        for request in await self.all_requests():
            if request.to_user_id != user_id or request.status != "pending":
                continue
            sender = accounts.get(request.from_user_id)
            if sender is None:
                continue
            incoming.append({**request.to_storage(), "fromUser": sender.summary()})
        return incoming

    async def get_existing_request(self, a: str, b: str) -> FriendRequest | None:
        return _pair_request(await self.all_requests(), a, b)

    async def get_qr_stats(self, user_id: str) -> dict[str, int]:
        qr = [r for r in await self.all_requests() if r.involves(user_id) and r.metadata.via_qr]
        return {
            "totalSentViaQR": sum(1 for r in qr if r.from_user_id == user_id),
            "totalReceivedViaQR": sum(1 for r in qr if r.to_user_id == user_id),
            "acceptedViaQR": sum(1 for r in qr if r.status == "accepted"),
            "pendingViaQR": sum(1 for r in qr if r.status == "pending"),
        }

    async def cleanup_old_requests(self) -> int:
        """Drop rejected requests past their retention and any request past the global one."""
        now = self.clock()
        rejected_cutoff = now - self.settings.rejected_request_retention_days * DAY_MS
        any_cutoff = now - self.settings.friend_request_retention_days * DAY_MS

        def sweep(requests: list[FriendRequest]) -> int:
            before = len(requests)
            requests[:] = [
                r
                for r in requests
                if not (r.status == "rejected" and r.timestamp < rejected_cutoff) and r.timestamp >= any_cutoff
            ]
            return before - len(requests)

        removed = await self.requests.mutate(sweep)
        if removed:
            logger.info("friend_requests_swept", removed=removed)
        return removed
