"""Referral codes, invite links and scanned-code resolution."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote

import structlog

from meetup.clock import DAY_MS, Clock
from meetup.errors import DuplicateError, ExpiredError, InvalidError, NotFoundError, UnrecognizedCodeError
from meetup.social.qr import (
    DEEP_LINK_SCHEME,
    FriendRequestCode,
    ProfileCode,
    ProfileLink,
    QrRegistry,
    RawLookup,
    ReferralCode,
    friend_request_payload,
    parse_scanned_code,
    profile_payload,
)
from meetup.users.codes import REFERRAL_PREFIX
from meetup.users.service import unique_referral_code

if TYPE_CHECKING:
    from meetup.config import Settings
    from meetup.social.friends import FriendGraph
    from meetup.tasks import TaskQueue
    from meetup.users.models import Account
    from meetup.users.service import UserDirectory

logger = structlog.get_logger()

REFERRAL_BONUS = 1


def referral_link(code: str) -> str:
    return f"{DEEP_LINK_SCHEME}referral/{code}"


def profile_link(nickname: str) -> str:
    return f"{DEEP_LINK_SCHEME}profile/{quote(nickname, safe='')}"


def add_friend_link(user_id: str) -> str:
    return f"{DEEP_LINK_SCHEME}add-friend/{user_id}"


class InviteService:
    def __init__(
        self,
        directory: UserDirectory,
        friends: FriendGraph,
        qr: QrRegistry,
        tasks: TaskQueue,
        *,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.directory = directory
        self.friends = friends
        self.qr = qr
        self.tasks = tasks
        self.settings = settings
        self.clock = clock

    @property
    def referral_ttl_ms(self) -> int:
        return self.settings.referral_ttl_days * DAY_MS

    # ------------------------------------------------------------------
    # Codes and links
    # ------------------------------------------------------------------

    async def generate_referral_code(self, user_id: str) -> str:
        """Issue a new referral code for an account, restarting its expiry window."""
        now = self.clock()

        def assign(account: Account, accounts: list[Account]) -> None:
            account.referral_code = unique_referral_code(accounts, now, user_id)
            account.referral_generated_at = now

        account = await self.directory.update(user_id, assign)
        logger.info("referral_code_generated", user_id=user_id)
        return account.referral_code or ""

    async def get_referral_link(self, user_id: str) -> str:
        account = await self.directory.get(user_id)
        code = account.referral_code or await self.generate_referral_code(user_id)
        return referral_link(code)

    async def get_all_links(self, user_id: str) -> dict[str, str | None]:
        account = await self.directory.get(user_id)
        return {
            "referralLink": await self.get_referral_link(user_id),
            "prettyLink": profile_link(account.nickname),
            "friendLink": add_friend_link(account.id),
            "telegramUsername": f"@{account.telegram.username}" if account.telegram and account.telegram.username else None,
        }

    async def generate_friend_qr(self, user_id: str) -> dict[str, Any]:
        """Friend-request QR payload, valid for ``qr_ttl_hours``."""
        account = await self.directory.get(user_id)
        now = self.clock()
        data = friend_request_payload(account.id, account.nickname, now, self.qr.ttl_ms)
        qr_id = await self.qr.record(data, account.id)
        return {"data": data, "expiresAt": now + self.qr.ttl_ms, "qrId": qr_id}

    async def create_profile_qr(self, user_id: str) -> dict[str, Any]:
        account = await self.directory.get(user_id)
        return {"data": profile_payload(account.id, account.nickname, account.avatar, self.clock())}

    # ------------------------------------------------------------------
    # Referrals
    # ------------------------------------------------------------------

    async def use_referral(self, code: str, new_user_id: str) -> dict[str, Any]:
        """
        Redeem a referral code for a newly registered account.

        Bumps the referrer's ``referralsCount`` and ``referralBonus``, stamps
        ``referredBy`` and queues mutual friend requests.

        Raises:
            NotFoundError: unknown code or account.
            ExpiredError: code older than the referral window.
            InvalidError: redeeming one's own code.
            DuplicateError: the account was already referred.
        """
        referrer = await self.directory.find_by_referral_code(code)
        if referrer is None:
            msg = "Invalid referral code"
            raise NotFoundError(msg)
        now = self.clock()
        if referrer.referral_generated_at and referrer.referral_generated_at < now - self.referral_ttl_ms:
            logger.info("referral_expired", referrer_id=referrer.id)
            msg = "Referral link has expired"
            raise ExpiredError(msg)
        if referrer.id == new_user_id:
            msg = "You cannot use your own referral code"
            raise InvalidError(msg)

        def stamp(account: Account, _accounts: list[Account]) -> None:
            if account.referred_by:
                msg = "Account was already referred"
                raise DuplicateError(msg)
            account.referred_by = referrer.id

        await self.directory.update(new_user_id, stamp)

        def reward(account: Account, _accounts: list[Account]) -> None:
            account.stats.bump("referralsCount", 1)
            account.stats.bump("referralBonus", REFERRAL_BONUS)

        await self.directory.update(referrer.id, reward)
        self.tasks.enqueue(
            "referral_friend_requests",
            lambda: self._mutual_requests(referrer.id, new_user_id),
        )
        logger.info("referral_used", referrer_id=referrer.id, user_id=new_user_id)
        return {
            "referrer": {"id": referrer.id, "nickname": referrer.nickname, "email": referrer.email},
            "bonus": REFERRAL_BONUS,
        }

    async def _mutual_requests(self, referrer_id: str, user_id: str) -> None:
        """Request both ways; the reverse one normally fails as already sent."""
        for sender, receiver in ((referrer_id, user_id), (user_id, referrer_id)):
            try:
                await self.friends.send_request(sender, receiver)
            except (DuplicateError, InvalidError, NotFoundError) as e:
                logger.info("referral_friend_request_skipped", from_user_id=sender, to_user_id=receiver, reason=str(e))

    async def process_referral_code(self, code: str, new_user_id: str) -> dict[str, Any]:
        if not code.startswith(REFERRAL_PREFIX):
            msg = "Invalid code format"
            raise UnrecognizedCodeError(msg)
        return await self.use_referral(code, new_user_id)

    async def get_referral_stats(self, user_id: str) -> dict[str, Any]:
        account = await self.directory.get(user_id)
        referrals = [a for a in await self.directory.all() if a.referred_by == user_id]
        return {
            "code": account.referral_code,
            "generatedAt": account.referral_generated_at,
            "totalReferrals": len(referrals),
            "successfulReferrals": sum(1 for a in referrals if a.is_active),
            "lastReferral": referrals[-1].public_view() if referrals else None,
            "stats": account.stats.to_storage(),
        }

    # ------------------------------------------------------------------
    # Scanned codes and invite links
    # ------------------------------------------------------------------

    async def process_scanned_code(self, data: str, scanner_id: str) -> dict[str, Any]:
        """
        Resolve a scanned QR string into an action.

        Returns a dict with ``action`` set to ``friend_request_sent``,
        ``view_profile`` or ``referral_used``.
        """
        code = parse_scanned_code(data)
        if isinstance(code, FriendRequestCode):
            return await self._scan_friend_request(code, scanner_id)
        if isinstance(code, ProfileCode):
            account = await self.directory.get(code.user_id)
            return {"action": "view_profile", "user": account}
        if isinstance(code, ProfileLink):
            return await self._view(code.nickname)
        if isinstance(code, ReferralCode):
            result = await self.process_referral_code(code.code, scanner_id)
            return {"action": "referral_used", **result}
        if isinstance(code, RawLookup):
            return await self._view(code.value)
        msg = "Could not recognize the QR code"
        raise UnrecognizedCodeError(msg)

    async def _view(self, identifier: str) -> dict[str, Any]:
        account = await self.directory.find(identifier)
        if account is None:
            msg = "Could not recognize the QR code"
            raise UnrecognizedCodeError(msg)
        return {"action": "view_profile", "user": account}

    async def _scan_friend_request(self, code: FriendRequestCode, scanner_id: str) -> dict[str, Any]:
        if code.expires_at is not None and code.expires_at < self.clock():
            msg = "QR code has expired"
            raise ExpiredError(msg)
        if code.user_id == scanner_id:
            msg = "You cannot add yourself through your own QR code"
            raise InvalidError(msg)
        target = await self.directory.get(code.user_id)
        existing = await self.friends.get_existing_request(scanner_id, target.id)
        if existing is not None and existing.status == "accepted":
            msg = "You are already friends with this user"
            raise DuplicateError(msg)
        if existing is not None and existing.status == "pending":
            msg = "Request already sent"
            raise DuplicateError(msg)
        request = await self.friends.send_request_via_qr(scanner_id, target.id)
        return {"action": "friend_request_sent", "user": target, "requestId": request.id}

    async def process_invite_link(self, link: str, new_user_id: str) -> dict[str, Any]:
        """
        Handle an invite a new account arrived with.

        Referral links redeem the code; add-friend and profile links (and a
        bare nickname) make the inviter send a friend request to the new
        account.
        """
        link = (link or "").strip()
        if link.startswith(DEEP_LINK_SCHEME):
            path = link[len(DEEP_LINK_SCHEME) :]
            if path.startswith("referral/"):
                result = await self.use_referral(path[len("referral/") :], new_user_id)
                return {"action": "referral_used", **result}
            if path.startswith("add-friend/"):
                inviter = await self.directory.find(path[len("add-friend/") :].split("/")[0])
                if inviter is not None:
                    return await self._invite_from(inviter, new_user_id)
            if path.startswith("profile/"):
                inviter = await self.directory.find(unquote(path[len("profile/") :]))
                if inviter is not None:
                    return await self._invite_from(inviter, new_user_id)

        if link.startswith(REFERRAL_PREFIX):
            result = await self.use_referral(link, new_user_id)
            return {"action": "referral_used", **result}

        inviter = await self.directory.find(link)
        if inviter is not None:
            return await self._invite_from(inviter, new_user_id)

        msg = "Invalid invite link"
        raise UnrecognizedCodeError(msg)

    async def _invite_from(self, inviter: Account, new_user_id: str) -> dict[str, Any]:
        request = await self.friends.send_request(inviter.id, new_user_id)
        return {"action": "friend_request_sent", "referrer": inviter, "requestId": request.id}
