"""Pydantic schemas for friend, QR and invite endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from meetup.schemas import ApiModel


class FriendRequestCreate(ApiModel):
    from_user_id: str = Field(..., min_length=1)
    to_user_id: str = Field(..., min_length=1)


class ScanRequest(ApiModel):
    data: str = Field(..., min_length=1, max_length=4096)
    scanner_id: str = Field(..., min_length=1)


class ReferralUseRequest(ApiModel):
    code: str = Field(..., min_length=1, max_length=64)
    user_id: str = Field(..., min_length=1)


class InviteRequest(ApiModel):
    link: str = Field(..., min_length=1, max_length=512)
    user_id: str = Field(..., min_length=1)


class FriendRequestResponse(BaseModel):
    success: bool = True
    request: dict[str, Any]


class FriendListResponse(BaseModel):
    success: bool = True
    friends: list[dict[str, Any]]
    total: int


class IncomingRequestsResponse(BaseModel):
    success: bool = True
    requests: list[dict[str, Any]]
    total: int


class ActionResponse(BaseModel):
    """Outcome of a scanned code, referral or invite link."""

    success: bool = True
    action: str
    details: dict[str, Any] = {}
