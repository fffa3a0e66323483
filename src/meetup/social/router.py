"""Friend graph, QR code and invite endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from meetup.container import Container
from meetup.dependencies import get_container
from meetup.schemas import ResultResponse
from meetup.social.schemas import (
    ActionResponse,
    FriendListResponse,
    FriendRequestCreate,
    FriendRequestResponse,
    IncomingRequestsResponse,
    InviteRequest,
    ReferralUseRequest,
    ScanRequest,
)

router = APIRouter(prefix="/api/v1", tags=["Social"])


def _action(result: dict[str, Any]) -> ActionResponse:
    """Render a service outcome; accounts are reduced to public views."""
    details = {}
    for key, value in result.items():
        if key == "action":
            continue
        details[key] = value.public_view() if hasattr(value, "public_view") else value
    return ActionResponse(action=result["action"], details=details)


# ── Friend requests ──


@router.post("/friends/requests", response_model=FriendRequestResponse, status_code=201)
async def send_friend_request(body: FriendRequestCreate, container: Container = Depends(get_container)):  # noqa: B008
    request = await container.friends.send_request(body.from_user_id, body.to_user_id)
    return FriendRequestResponse(request=request.to_storage())


@router.post("/friends/requests/{request_id}/accept", response_model=FriendRequestResponse)
async def accept_friend_request(request_id: str, container: Container = Depends(get_container)):  # noqa: B008
    request = await container.friends.accept_request(request_id)
    return FriendRequestResponse(request=request.to_storage())


@router.post("/friends/requests/{request_id}/reject", response_model=FriendRequestResponse)
async def reject_friend_request(request_id: str, container: Container = Depends(get_container)):  # noqa: B008
    request = await container.friends.reject_request(request_id)
    return FriendRequestResponse(request=request.to_storage())


@router.get("/users/{user_id}/friends", response_model=FriendListResponse)
async def list_friends(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    friends = await container.friends.get_friends_of(user_id)
    return FriendListResponse(friends=[f.public_view() for f in friends], total=len(friends))


@router.get("/users/{user_id}/friend-requests", response_model=IncomingRequestsResponse)
async def incoming_requests(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    requests = await container.friends.get_incoming_requests(user_id)
    return IncomingRequestsResponse(requests=requests, total=len(requests))


@router.get("/users/{user_id}/qr-stats", response_model=ResultResponse)
async def qr_stats(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result=await container.friends.get_qr_stats(user_id))


# ── Referral codes, links and QR payloads ──


@router.post("/users/{user_id}/referral-code", response_model=ResultResponse)
async def new_referral_code(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result={"code": await container.invites.generate_referral_code(user_id)})


@router.get("/users/{user_id}/referral-stats", response_model=ResultResponse)
async def referral_stats(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result=await container.invites.get_referral_stats(user_id))


@router.get("/users/{user_id}/links", response_model=ResultResponse)
async def invite_links(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result=await container.invites.get_all_links(user_id))


@router.post("/users/{user_id}/qr/friend", response_model=ResultResponse)
async def friend_qr(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result=await container.invites.generate_friend_qr(user_id))


@router.post("/users/{user_id}/qr/profile", response_model=ResultResponse)
async def profile_qr(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result=await container.invites.create_profile_qr(user_id))


# ── Resolution ──


@router.post("/qr/scan", response_model=ActionResponse)
async def scan_code(body: ScanRequest, container: Container = Depends(get_container)):  # noqa: B008
    return _action(await container.invites.process_scanned_code(body.data, body.scanner_id))


@router.post("/referrals/use", response_model=ActionResponse)
async def use_referral(body: ReferralUseRequest, container: Container = Depends(get_container)):  # noqa: B008
    result = await container.invites.use_referral(body.code, body.user_id)
    return _action({"action": "referral_used", **result})


@router.post("/invites", response_model=ActionResponse)
async def accept_invite(body: InviteRequest, container: Container = Depends(get_container)):  # noqa: B008
    return _action(await container.invites.process_invite_link(body.link, body.user_id))
