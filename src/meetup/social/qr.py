"""Scannable payloads: parsing into a tagged union, and the QR record log.

Recognized shapes, in the order they are tried:

- JSON ``{"type": "friend_request", "userId", "nickname", "expiresAt"}``
- JSON ``{"type": "user_profile", "userId", ...}``
- ``meetup://add-friend/{id}[/{nickname}]``
- ``meetup://referral/{code}``
- ``meetup://profile/{url-encoded nickname}``
- ``FRIEND_{id}_{timestamp}``
- any URL carrying a ``ref`` query parameter
- ``REF_...`` referral codes
- anything else is looked up as a raw id, email or nickname
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union
from urllib.parse import parse_qs, unquote, urlsplit

import structlog

from meetup.clock import HOUR_MS, Clock
from meetup.errors import UnrecognizedCodeError
from meetup.storage import keys
from meetup.storage.repository import DocumentStore, json_document
from meetup.users.codes import REFERRAL_PREFIX, new_qr_id

logger = structlog.get_logger()

DEEP_LINK_SCHEME = "meetup://"


@dataclass(frozen=True)
class FriendRequestCode:
    user_id: str
    nickname: str | None = None
    expires_at: int | None = None


@dataclass(frozen=True)
class ProfileCode:
    user_id: str


@dataclass(frozen=True)
class ProfileLink:
    nickname: str


@dataclass(frozen=True)
class ReferralCode:
    code: str


@dataclass(frozen=True)
class RawLookup:
    value: str


ScannedCode = Union[FriendRequestCode, ProfileCode, ProfileLink, ReferralCode, RawLookup]


def _deep_link_segments(data: str) -> list[str]:
    return [s for s in data[len(DEEP_LINK_SCHEME) :].split("/") if s]


def _parse_json(data: str) -> ScannedCode | None:
    try:
        parsed = json.loads(data)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    kind = parsed.get("type")
    user_id = parsed.get("userId")
    if kind == "friend_request" and isinstance(user_id, str):
        expires = parsed.get("expiresAt")
        return FriendRequestCode(user_id, parsed.get("nickname"), expires if isinstance(expires, int) else None)
    if kind == "user_profile" and isinstance(user_id, str):
        return ProfileCode(user_id)
    msg = f"Unknown QR code type: {kind!r}"
    raise UnrecognizedCodeError(msg)


def parse_scanned_code(data: str) -> ScannedCode:
    """Classify a scanned string; raises UnrecognizedCodeError for empty or unknown JSON payloads."""
    if not data or not data.strip():
        msg = "Empty QR code"
        raise UnrecognizedCodeError(msg)
    data = data.strip()

    parsed = _parse_json(data)
    if parsed is not None:
        return parsed

    if data.startswith(DEEP_LINK_SCHEME):
        segments = _deep_link_segments(data)
        if len(segments) >= 2 and segments[0] == "add-friend":
            return FriendRequestCode(segments[1], unquote(segments[2]) if len(segments) > 2 else None)
        if len(segments) >= 2 and segments[0] == "referral":
            return ReferralCode(segments[1])
        if len(segments) >= 2 and segments[0] == "profile":
            return ProfileLink(unquote("/".join(segments[1:])))

    if data.startswith("FRIEND_"):
        rest = data[len("FRIEND_") :]
        head, _, tail = rest.rpartition("_")
        user_id = head if head and tail.isdigit() else rest
        if user_id:
            return FriendRequestCode(user_id)

    parts = urlsplit(data)
    if parts.scheme and parts.query:
        ref = parse_qs(parts.query).get("ref")
        if ref and ref[0]:
            return ReferralCode(ref[0])

    if data.startswith(REFERRAL_PREFIX):
        return ReferralCode(data)

    return RawLookup(data)


def friend_request_payload(user_id: str, nickname: str, now: int, ttl_ms: int) -> str:
    return json.dumps(
        {
            "type": "friend_request",
            "userId": user_id,
            "nickname": nickname,
            "timestamp": now,
            "expiresAt": now + ttl_ms,
        },
        ensure_ascii=False,
    )


def profile_payload(user_id: str, nickname: str, avatar: str | None, now: int) -> str:
    return json.dumps(
        {"type": "user_profile", "userId": user_id, "nickname": nickname, "avatar": avatar, "timestamp": now},
        ensure_ascii=False,
    )


class QrRegistry:
    """Generated friend QR codes under ``meetup_qr_records``."""

    def __init__(self, store: DocumentStore, clock: Clock, ttl_hours: int = 24) -> None:
        self.doc = json_document(store, keys.QR_RECORDS)
        self.clock = clock
        self.ttl_ms = ttl_hours * HOUR_MS

    async def record(self, data: str, user_id: str) -> str:
        now = self.clock()
        qr_id = new_qr_id(now)

        def add(records: dict[str, Any]) -> None:
            records[qr_id] = {"data": data, "userId": user_id, "generatedAt": now, "used": False}

        await self.doc.mutate(add)
        return qr_id

    async def records(self) -> dict[str, Any]:
        return await self.doc.load_all()

    async def purge_expired(self) -> int:
        cutoff = self.clock() - self.ttl_ms
        records = await self.doc.load_all()
        if not any((r or {}).get("generatedAt", 0) < cutoff for r in records.values()):
            return 0

        def purge(current: dict[str, Any]) -> int:
            stale = [k for k, r in current.items() if (r or {}).get("generatedAt", 0) < cutoff]
            for k in stale:
                del current[k]
            return len(stale)

        removed = await self.doc.mutate(purge)
        logger.info("qr_records_purged", removed=removed)
        return removed
