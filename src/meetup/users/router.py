"""Account, session, verification and maintenance endpoints."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query

from meetup.collaborators import notify_quietly
from meetup.container import Container
from meetup.dependencies import get_container
from meetup.errors import MeetupError
from meetup.schemas import ResultResponse, SuccessResponse
from meetup.users.models import NewAccount
from meetup.users.schemas import (
    Channel,
    CodeIssuedResponse,
    CodeRequest,
    LoginRequest,
    PatchRequest,
    PhoneRequest,
    PositionRequest,
    RegisterRequest,
    RegisterResponse,
    ResetCompleteRequest,
    ResetRequest,
    ResetVerifyRequest,
    TelegramRequest,
    UserListResponse,
    UserResponse,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["Users"])


def _describe_invite(result: dict[str, Any]) -> dict[str, Any]:
    out = {k: v for k, v in result.items() if k not in ("user", "referrer")}
    for key in ("user", "referrer"):
        value = result.get(key)
        if value is not None:
            out[key] = value.summary() if hasattr(value, "summary") else value
    return out


# ── Session ──


@router.post("/session", response_model=UserResponse)
async def login(body: LoginRequest, container: Container = Depends(get_container)):  # noqa: B008
    account = await container.directory.authenticate(body.identifier, body.password)
    return UserResponse(user=account.public_view())


@router.get("/session", response_model=UserResponse)
async def current_session(container: Container = Depends(get_container)):  # noqa: B008
    account = await container.directory.current_user()
    return UserResponse(user=account.public_view() if account else None)


@router.delete("/session", response_model=SuccessResponse)
async def logout(container: Container = Depends(get_container)):  # noqa: B008
    await container.directory.logout()
    return SuccessResponse(message="Logged out")


# ── Accounts ──


@router.post("/users", response_model=RegisterResponse, status_code=201)
async def register(body: RegisterRequest, container: Container = Depends(get_container)):  # noqa: B008
    """Register an account; an invite code or link is redeemed afterwards."""
    account = await container.directory.register(
        NewAccount(
            email=body.email,
            nickname=body.nickname,
            password=body.password,
            avatar=body.avatar,
            about=body.about,
            position=list(body.position) if body.position else None,
            phone_number=body.phone_number,
        )
    )
    invite = None
    if body.invite:
        try:
            invite = _describe_invite(await container.invites.process_invite_link(body.invite, account.id))
        except MeetupError as e:
            logger.info("registration_invite_failed", user_id=account.id, error=e.code)
            invite = {"success": False, "message": e.message, "error": e.code}
        account = await container.directory.get(account.id)
    return RegisterResponse(user=account.public_view(), invite=invite)


@router.get("/users", response_model=UserListResponse)
async def search_users(
    query: str = Query(..., min_length=2),
    online: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    container: Container = Depends(get_container),  # noqa: B008
):
    accounts = await container.directory.search(query, only_online=online, limit=limit, offset=offset)
    return UserListResponse(users=[a.public_view() for a in accounts], total=len(accounts))


@router.get("/users/nearby", response_model=UserListResponse)
async def nearby_users(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(10, gt=0, le=20000),
    container: Container = Depends(get_container),  # noqa: B008
):
    accounts = await container.directory.get_nearby((lat, lng), radius_km)
    return UserListResponse(users=[a.public_view() for a in accounts], total=len(accounts))


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    account = await container.directory.get(user_id)
    return UserResponse(user=account.public_view())


@router.patch("/users/{user_id}", response_model=UserResponse)
async def patch_user(user_id: str, body: PatchRequest, container: Container = Depends(get_container)):  # noqa: B008
    """Update allow-listed fields (camelCase keys, as stored)."""
    account = await container.directory.patch(user_id, body.updates)
    return UserResponse(user=account.public_view())


@router.delete("/users/{user_id}", response_model=SuccessResponse)
async def delete_user(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    await container.delete_account(user_id)
    return SuccessResponse(message="Account deleted")


@router.post("/users/{user_id}/deletion", response_model=UserResponse)
async def schedule_deletion(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    account = await container.directory.schedule_deletion(user_id)
    return UserResponse(user=account.public_view())


@router.delete("/users/{user_id}/deletion", response_model=UserResponse)
async def cancel_deletion(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    account = await container.directory.cancel_deletion(user_id)
    return UserResponse(user=account.public_view())


@router.put("/users/{user_id}/position", response_model=UserResponse)
async def update_position(
    user_id: str, body: PositionRequest, container: Container = Depends(get_container)  # noqa: B008
):
    account = await container.directory.update_position(user_id, (body.lat, body.lng))
    return UserResponse(user=account.public_view())


@router.get("/users/{user_id}/activity", response_model=ResultResponse)
async def user_activity(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    await container.directory.get(user_id)
    return ResultResponse(
        result={
            "profile": await container.activity.get_profile(user_id),
            "movements": await container.activity.get_movements(user_id),
        }
    )


# ── Phone and Telegram ──


@router.post("/users/{user_id}/phone", response_model=UserResponse)
async def add_phone(user_id: str, body: PhoneRequest, container: Container = Depends(get_container)):  # noqa: B008
    account = await container.verification.add_phone_number(user_id, body.phone_number)
    return UserResponse(user=account.public_view())


@router.delete("/users/{user_id}/phone", response_model=UserResponse)
async def remove_phone(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    account = await container.verification.remove_phone_number(user_id)
    return UserResponse(user=account.public_view())


@router.get("/users/{user_id}/phone", response_model=ResultResponse)
async def phone_status(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result=await container.verification.phone_verification_status(user_id))


@router.post("/users/{user_id}/telegram", response_model=UserResponse)
async def bind_telegram(
    user_id: str, body: TelegramRequest, container: Container = Depends(get_container)  # noqa: B008
):
    account = await container.verification.bind_telegram(user_id, body.username)
    return UserResponse(user=account.public_view())


@router.delete("/users/{user_id}/telegram", response_model=UserResponse)
async def unbind_telegram(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    account = await container.verification.unbind_telegram(user_id)
    return UserResponse(user=account.public_view())


@router.post("/users/{user_id}/verification/{channel}", response_model=CodeIssuedResponse)
async def issue_code(user_id: str, channel: Channel, container: Container = Depends(get_container)):  # noqa: B008
    """Issue a code and hand it to the notification sink."""
    issued = await container.verification.issue_code(channel, user_id)
    await notify_quietly(
        container.notifications, "Verification code", f"Your MeetUP code: {issued['code']}", f"{channel}_code"
    )
    return CodeIssuedResponse(
        expires_at=issued["expiresAt"],
        target=issued["target"],
        code=issued["code"] if container.settings.debug else None,
    )


@router.post("/users/{user_id}/verification/{channel}/confirm", response_model=UserResponse)
async def confirm_code(
    user_id: str, channel: Channel, body: CodeRequest, container: Container = Depends(get_container)  # noqa: B008
):
    account = await container.verification.verify_code(channel, user_id, body.code)
    return UserResponse(user=account.public_view())


# ── Password reset via Telegram ──


@router.post("/password-reset", response_model=CodeIssuedResponse)
async def request_reset(body: ResetRequest, container: Container = Depends(get_container)):  # noqa: B008
    issued = await container.verification.request_password_reset(body.telegram_username)
    await notify_quietly(
        container.notifications, "Password reset", f"Your MeetUP reset code: {issued['code']}", "reset_code"
    )
    return CodeIssuedResponse(
        expires_at=issued["expiresAt"],
        target=issued["username"],
        code=issued["code"] if container.settings.debug else None,
    )


@router.post("/password-reset/verify", response_model=ResultResponse)
async def verify_reset(body: ResetVerifyRequest, container: Container = Depends(get_container)):  # noqa: B008
    user_id = await container.verification.verify_reset_code(body.telegram_username, body.code)
    return ResultResponse(result={"userId": user_id})


@router.post("/password-reset/complete", response_model=SuccessResponse)
async def complete_reset(body: ResetCompleteRequest, container: Container = Depends(get_container)):  # noqa: B008
    await container.verification.reset_password(body.telegram_username, body.code, body.new_password)
    return SuccessResponse(message="Password changed")


# ── Maintenance ──


@router.get("/system/stats", response_model=ResultResponse)
async def system_stats(container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result=await container.maintenance.system_stats())


@router.post("/system/cleanup", response_model=ResultResponse)
async def run_cleanup(container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result=await container.maintenance.cleanup())


@router.post("/system/backup", response_model=ResultResponse)
async def run_backup(container: Container = Depends(get_container)):  # noqa: B008
    snapshot = await container.maintenance.backup()
    return ResultResponse(result={"timestamp": snapshot["timestamp"], "users": len(snapshot["users"])})


@router.post("/system/restore", response_model=SuccessResponse)
async def run_restore(container: Container = Depends(get_container)):  # noqa: B008
    await container.maintenance.restore()
    return SuccessResponse(message="Backup restored")
