"""Storage key names shared with earlier app versions."""

from __future__ import annotations

USERS = "meetup_users"
CURRENT_USER = "meetup_current_user"
FRIEND_REQUESTS = "meetup_friend_requests"
QR_RECORDS = "meetup_qr_records"
BACKUP = "meetup_backup"
BACKUPS = "meetup_backups"

CHATS = "meetup_chats_v2"
GLOBAL_CHAT = "meetup_global_chat_v2"
CHAT_INDEX = "meetup_chat_index"
LEGACY_CHATS = "meetup_chats"
LEGACY_GLOBAL_CHAT = "meetup_global_chat"

PEDOMETER = "meetup_pedometer_stats_v2"

TELEGRAM_RESET_PREFIX = "tg_reset_"


def activity(user_id: str) -> str:
    return f"user_activity_{user_id}"


def movements(user_id: str) -> str:
    return f"user_movements_{user_id}"


def user_stats(user_id: str) -> str:
    return f"user_stats_{user_id}"


def user_online(user_id: str) -> str:
    return f"user_online_{user_id}"


def telegram_reset(username: str) -> str:
    return f"{TELEGRAM_RESET_PREFIX}{username}"


def pedometer(user_id: str | None = None) -> str:
    """Step record of one account, or the device-wide one."""
    return f"{PEDOMETER}_{user_id}" if user_id else PEDOMETER


def derived_user_keys(user_id: str) -> list[str]:
    """Per-user documents removed together with the account."""
    return [activity(user_id), movements(user_id), user_stats(user_id), user_online(user_id), pedometer(user_id)]
