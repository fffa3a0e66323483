"""Phone and Telegram verification, and password reset through Telegram.

Codes are stored on the account (phone, Telegram binding) or under
``tg_reset_{username}`` (reset). A code and its expiry are always
cleared together, whether it expires or is consumed.
"""

from __future__ import annotations

import hmac
from typing import TYPE_CHECKING, Any, Literal

import structlog

from meetup.clock import MINUTE_MS, Clock, to_iso
from meetup.errors import (
    DuplicateError,
    ExpiredError,
    InvalidError,
    NotFoundError,
    RateExceededError,
)
from meetup.storage import keys
from meetup.storage.repository import DocumentStore, json_document
from meetup.users.codes import (
    PHONE_CODE_LENGTH,
    TELEGRAM_CODE_LENGTH,
    clean_phone,
    clean_telegram_username,
    numeric_code,
)
from meetup.users.models import Account, TelegramBinding
from meetup.users.password import hash_password, validate_password_strength

if TYPE_CHECKING:
    from meetup.config import Settings
    from meetup.users.service import UserDirectory

logger = structlog.get_logger()

Channel = Literal["phone", "telegram"]


def _codes_match(expected: str | None, given: str | None) -> bool:
    if not expected or not given:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), given.strip().encode("utf-8"))


class VerificationService:
    def __init__(self, directory: UserDirectory, store: DocumentStore, *, settings: Settings, clock: Clock) -> None:
        self.directory = directory
        self.store = store
        self.settings = settings
        self.clock = clock

    @property
    def code_ttl_ms(self) -> int:
        return self.settings.verification_code_ttl_minutes * MINUTE_MS

    # ------------------------------------------------------------------
    # Phone
    # ------------------------------------------------------------------

    async def add_phone_number(self, user_id: str, phone_number: str) -> Account:
        """
        Attach an unverified phone number.

        Raises:
            InvalidError: fewer than 10 digits after cleaning.
            DuplicateError: number used by another account.
        """
        cleaned = clean_phone(phone_number)
        if len(cleaned) < 10:
            msg = "Invalid phone number"
            raise InvalidError(msg)

        def attach(account: Account, accounts: list[Account]) -> None:
            if any(clean_phone(a.phone_number) == cleaned and a.id != account.id for a in accounts):
                msg = "Phone number already used by another account"
                raise DuplicateError(msg)
            account.phone_number = phone_number
            account.phone_verified = False

        account = await self.directory.update(user_id, attach)
        logger.info("phone_added", user_id=user_id)
        return account

    async def remove_phone_number(self, user_id: str) -> Account:
        def detach(account: Account, _accounts: list[Account]) -> None:
            account.phone_number = None
            account.phone_verified = False
            account.phone_verification_code = None
            account.phone_verification_expires = None
            account.phone_verified_at = None

        account = await self.directory.update(user_id, detach)
        logger.info("phone_removed", user_id=user_id)
        return account

    async def phone_verification_status(self, user_id: str) -> dict[str, Any]:
        account = await self.directory.get(user_id)
        return {
            "phoneNumber": account.phone_number,
            "phoneVerified": account.phone_verified,
            "phoneVerifiedAt": account.phone_verified_at,
            "hasPendingVerification": bool(account.phone_verification_code),
            "verificationExpires": account.phone_verification_expires,
        }

    # ------------------------------------------------------------------
    # Telegram binding
    # ------------------------------------------------------------------

    async def bind_telegram(self, user_id: str, username: str) -> Account:
        """Bind an unverified Telegram username; raises DuplicateError if bound elsewhere."""
        clean = clean_telegram_username(username)
        if not clean:
            msg = "Telegram username is required"
            raise InvalidError(msg)

        def bind(account: Account, accounts: list[Account]) -> None:
            for other in accounts:
                if other.id != account.id and other.telegram and other.telegram.username.lower() == clean.lower():
                    msg = "This Telegram account is bound to another user"
                    raise DuplicateError(msg)
            account.telegram = TelegramBinding(username=clean)

        account = await self.directory.update(user_id, bind)
        logger.info("telegram_bound", user_id=user_id, username=clean)
        return account

    async def unbind_telegram(self, user_id: str) -> Account:
        def unbind(account: Account, _accounts: list[Account]) -> None:
            account.telegram = None

        account = await self.directory.update(user_id, unbind)
        logger.info("telegram_unbound", user_id=user_id)
        return account

    # ------------------------------------------------------------------
    # Codes
    # ------------------------------------------------------------------

    async def issue_code(self, channel: Channel, user_id: str) -> dict[str, Any]:
        """
        Generate a fresh verification code (4 digits for phone, 6 for Telegram).

        Resending is not rate limited; a new code replaces the previous one.

        Raises:
            NotFoundError: no account, or nothing bound on ``channel``.
        """
        now = self.clock()
        expires = now + self.code_ttl_ms

        if channel == "phone":
            code = numeric_code(PHONE_CODE_LENGTH)

            def store_phone(account: Account, _accounts: list[Account]) -> None:
                if not account.phone_number:
                    msg = "No phone number added"
                    raise NotFoundError(msg)
                account.phone_verification_code = code
                account.phone_verification_expires = expires
                account.phone_verification_sent_at = now

            account = await self.directory.update(user_id, store_phone)
            target = account.phone_number
        elif channel == "telegram":
            code = numeric_code(TELEGRAM_CODE_LENGTH)

            def store_telegram(account: Account, _accounts: list[Account]) -> None:
                if account.telegram is None or not account.telegram.username:
                    msg = "Telegram account is not bound"
                    raise NotFoundError(msg)
                account.telegram.verification_code = code
                account.telegram.code_expires = expires

            account = await self.directory.update(user_id, store_telegram)
            target = account.telegram.username if account.telegram else None
        else:
            msg = f"Unknown verification channel {channel}"
            raise InvalidError(msg)

        logger.info("verification_code_issued", user_id=user_id, channel=channel, expires_at=expires)
        return {"code": code, "expiresAt": expires, "target": target, "channel": channel}

    async def verify_code(self, channel: Channel, user_id: str, code: str) -> Account:
        """
        Check a code and mark the channel verified.

        Raises:
            NotFoundError: no account or no pending code.
            ExpiredError: the code's deadline passed; code and expiry are cleared.
            InvalidError: wrong code.
        """
        if channel == "phone":
            return await self._verify_phone(user_id, code)
        if channel == "telegram":
            return await self._verify_telegram(user_id, code)
        msg = f"Unknown verification channel {channel}"
        raise InvalidError(msg)

    async def _verify_phone(self, user_id: str, code: str) -> Account:
        now = self.clock()
        account = await self.directory.get(user_id)
        if not account.phone_verification_code or not account.phone_verification_expires:
            msg = "Verification code not found or expired"
            raise NotFoundError(msg)

        if now > account.phone_verification_expires:

            def expire(target: Account, _accounts: list[Account]) -> None:
                target.phone_verification_code = None
                target.phone_verification_expires = None

            await self.directory.update(user_id, expire)
            logger.info("verification_code_expired", user_id=user_id, channel="phone")
            msg = "Verification code expired, request a new one"
            raise ExpiredError(msg)

        if not _codes_match(account.phone_verification_code, code):
            msg = "Wrong verification code"
            raise InvalidError(msg)

        def confirm(target: Account, _accounts: list[Account]) -> None:
            target.phone_verified = True
            target.phone_verification_code = None
            target.phone_verification_expires = None
            target.phone_verified_at = to_iso(now)

        account = await self.directory.update(user_id, confirm)
        logger.info("phone_verified", user_id=user_id)
        return account

    async def _verify_telegram(self, user_id: str, code: str) -> Account:
        now = self.clock()
        account = await self.directory.get(user_id)
        tg = account.telegram
        if tg is None:
            msg = "Telegram account is not bound"
            raise NotFoundError(msg)
        if not tg.verification_code:
            msg = "Verification code not found or expired"
            raise NotFoundError(msg)

        if tg.code_expires and now > tg.code_expires:

            def expire(target: Account, _accounts: list[Account]) -> None:
                if target.telegram is not None:
                    target.telegram.verification_code = None
                    target.telegram.code_expires = None

            await self.directory.update(user_id, expire)
            logger.info("verification_code_expired", user_id=user_id, channel="telegram")
            msg = "Verification code expired"
            raise ExpiredError(msg)

        if not _codes_match(tg.verification_code, code):
            msg = "Wrong verification code"
            raise InvalidError(msg)

        def confirm(target: Account, _accounts: list[Account]) -> None:
            if target.telegram is None:
                msg = "Telegram account is not bound"
                raise NotFoundError(msg)
            target.telegram.verified = True
            target.telegram.verification_code = None
            target.telegram.code_expires = None
            target.telegram.bound_at = to_iso(now)

        account = await self.directory.update(user_id, confirm)
        logger.info("telegram_verified", user_id=user_id)
        return account

    # ------------------------------------------------------------------
    # Password reset via Telegram
    # ------------------------------------------------------------------

    def _reset_doc(self, username: str):
        return json_document(self.store, keys.telegram_reset(username))

    async def request_password_reset(self, username: str) -> dict[str, Any]:
        """
        Store a 6-digit reset code for a verified Telegram username.

        Raises:
            InvalidError: empty username.
            NotFoundError: no account with this verified Telegram binding.
        """
        clean = clean_telegram_username(username)
        if not clean:
            msg = "Telegram username is required"
            raise InvalidError(msg)
        account = await self.directory.find_by_telegram_username(clean)
        if account is None:
            msg = "No user with this Telegram account, or it is not verified"
            raise NotFoundError(msg)

        now = self.clock()
        reset = {
            "code": numeric_code(TELEGRAM_CODE_LENGTH),
            "userId": account.id,
            "telegramUsername": clean,
            "expiresAt": now + self.code_ttl_ms,
            "createdAt": now,
            "attempts": 0,
        }
        await self._reset_doc(clean).replace(reset)
        logger.info("password_reset_requested", user_id=account.id, username=clean)
        return {
            "code": reset["code"],
            "userId": account.id,
            "username": clean,
            "expiresAt": reset["expiresAt"],
        }

    async def verify_reset_code(self, username: str, code: str) -> str:
        """
        Check a reset code; returns the account id it unlocks.

        Raises:
            InvalidError: malformed input or wrong code (the attempt is counted).
            NotFoundError: no pending reset.
            ExpiredError: deadline passed (the reset is discarded).
            RateExceededError: too many failed attempts (the reset is discarded).
        """
        clean = clean_telegram_username(username)
        if not clean or not code or len(code) != TELEGRAM_CODE_LENGTH:
            msg = f"Enter a valid {TELEGRAM_CODE_LENGTH}-digit code"
            raise InvalidError(msg)

        now = self.clock()
        max_attempts = self.settings.reset_code_max_attempts
        doc = self._reset_doc(clean)
        if not await doc.load_all():
            msg = "Code not found or expired"
            raise NotFoundError(msg)

        def check(reset: dict[str, Any]) -> tuple[str, Any]:
            if not reset:
                return "missing", None
            if now > (reset.get("expiresAt") or 0):
                return "expired", None
            if (reset.get("attempts") or 0) >= max_attempts:
                return "exhausted", None
            if not _codes_match(reset.get("code"), code):
                reset["attempts"] = (reset.get("attempts") or 0) + 1
                return "wrong", max_attempts - reset["attempts"]
            reset["verified"] = True
            reset["verifiedAt"] = now
            return "ok", reset.get("userId")

        outcome, detail = await doc.mutate(check)
        if outcome == "missing":
            await doc.remove()
            msg = "Code not found or expired"
            raise NotFoundError(msg)
        if outcome == "expired":
            await doc.remove()
            msg = "Code expired"
            raise ExpiredError(msg)
        if outcome == "exhausted":
            await doc.remove()
            msg = "Too many wrong attempts, request a new code"
            raise RateExceededError(msg)
        if outcome == "wrong":
            logger.info("password_reset_wrong_code", username=clean, remaining=detail)
            msg = f"Wrong code. Attempts left: {detail}"
            raise InvalidError(msg)
        return detail

    async def reset_password(self, username: str, code: str, new_password: str) -> Account:
        """Verify the reset code, set the new password and consume the code."""
        user_id = await self.verify_reset_code(username, code)
        validate_password_strength(
            new_password,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )
        new_hash = hash_password(new_password)
        now = self.clock()

        def set_password(account: Account, _accounts: list[Account]) -> None:
            account.password = new_hash
            account.last_password_change = now

        account = await self.directory.update(user_id, set_password)
        await self._reset_doc(clean_telegram_username(username)).remove()
        logger.info("password_reset", user_id=user_id)
        return account
