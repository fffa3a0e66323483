"""Pydantic schemas for account, session and verification endpoints."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, EmailStr, Field

from meetup.schemas import ApiModel


class RegisterRequest(ApiModel):
    email: EmailStr
    nickname: str = Field(..., min_length=3, max_length=32)
    password: str = Field(..., min_length=1, max_length=256)
    avatar: str | None = None
    about: str = Field("", max_length=500)
    position: tuple[float, float] | None = None
    phone_number: str | None = None
    invite: str | None = Field(None, description="Referral code or invite link the user arrived with")


class LoginRequest(ApiModel):
    identifier: str = Field(..., min_length=1, description="Email, nickname, id or phone number")
    password: str = Field(..., min_length=1)


class PatchRequest(BaseModel):
    updates: dict[str, Any]


class PositionRequest(ApiModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class PhoneRequest(ApiModel):
    phone_number: str = Field(..., min_length=1, max_length=32)


class TelegramRequest(ApiModel):
    username: str = Field(..., min_length=1, max_length=64)


class CodeRequest(ApiModel):
    code: str = Field(..., min_length=1, max_length=16)


class ResetRequest(ApiModel):
    telegram_username: str = Field(..., min_length=1, max_length=64)


class ResetVerifyRequest(ApiModel):
    telegram_username: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1, max_length=16)


class ResetCompleteRequest(ResetVerifyRequest):
    new_password: str = Field(..., min_length=1, max_length=256)


Channel = Literal["phone", "telegram"]


class UserResponse(BaseModel):
    success: bool = True
    user: dict[str, Any] | None = None


class UserListResponse(BaseModel):
    success: bool = True
    users: list[dict[str, Any]]
    total: int


class RegisterResponse(UserResponse):
    invite: dict[str, Any] | None = None


class CodeIssuedResponse(BaseModel):
    success: bool = True
    expires_at: int
    target: str | None = None
    code: str | None = None  # Only echoed in debug mode
