"""Phone/Telegram verification and Telegram password reset tests."""

from __future__ import annotations

import pytest

from meetup.clock import MINUTE_MS
from meetup.errors import DuplicateError, ExpiredError, InvalidError, NotFoundError, RateExceededError
from meetup.storage import keys
from meetup.users.password import verify_password


async def verified_telegram(container, user_id: str, username: str = "alice_tg") -> None:
    await container.verification.bind_telegram(user_id, username)
    issued = await container.verification.issue_code("telegram", user_id)
    await container.verification.verify_code("telegram", user_id, issued["code"])


class TestPhone:
    async def test_verify_within_window(self, container, clock, make_user):
        user = await make_user("Alice")
        await container.verification.add_phone_number(user.id, "+79991234567")
        issued = await container.verification.issue_code("phone", user.id)
        assert len(issued["code"]) == 4
        assert issued["expiresAt"] == clock() + 10 * MINUTE_MS

        clock.advance(5 * MINUTE_MS)
        account = await container.verification.verify_code("phone", user.id, issued["code"])
        assert account.phone_verified is True
        assert account.phone_verification_code is None
        assert account.phone_verification_expires is None
        assert account.phone_verified_at is not None

    async def test_expired_code_is_cleared(self, container, clock, make_user):
        user = await make_user("Alice")
        await container.verification.add_phone_number(user.id, "+79991234567")
        issued = await container.verification.issue_code("phone", user.id)

        clock.advance(10 * MINUTE_MS + 1)
        with pytest.raises(ExpiredError):
            await container.verification.verify_code("phone", user.id, issued["code"])

        account = await container.directory.get(user.id)
        assert account.phone_verification_code is None
        assert account.phone_verification_expires is None
        assert account.phone_verified is False

    async def test_wrong_code(self, container, make_user):
        user = await make_user("Alice")
        await container.verification.add_phone_number(user.id, "+79991234567")
        issued = await container.verification.issue_code("phone", user.id)
        wrong = "1000" if issued["code"] != "1000" else "1001"
        with pytest.raises(InvalidError):
            await container.verification.verify_code("phone", user.id, wrong)
        assert (await container.directory.get(user.id)).phone_verification_code == issued["code"]

    async def test_no_pending_code(self, container, make_user):
        user = await make_user("Alice")
        with pytest.raises(NotFoundError):
            await container.verification.verify_code("phone", user.id, "1234")

    async def test_issue_without_phone(self, container, make_user):
        user = await make_user("Alice")
        with pytest.raises(NotFoundError):
            await container.verification.issue_code("phone", user.id)

    async def test_phone_used_elsewhere(self, container, make_user):
        alice = await make_user("Alice", phone_number="+79991234567")
        bob = await make_user("Bobby")
        with pytest.raises(DuplicateError):
            await container.verification.add_phone_number(bob.id, "+7 (999) 123-45-67")
        assert (await container.directory.get(alice.id)).phone_number == "+79991234567"

    async def test_short_number_rejected(self, container, make_user):
        user = await make_user("Alice")
        with pytest.raises(InvalidError):
            await container.verification.add_phone_number(user.id, "12345")

    async def test_remove_clears_everything(self, container, make_user):
        user = await make_user("Alice")
        await container.verification.add_phone_number(user.id, "+79991234567")
        await container.verification.issue_code("phone", user.id)
        account = await container.verification.remove_phone_number(user.id)
        assert account.phone_number is None
        assert account.phone_verification_code is None
        status = await container.verification.phone_verification_status(user.id)
        assert status["hasPendingVerification"] is False


class TestTelegram:
    async def test_bind_and_verify(self, container, make_user):
        user = await make_user("Alice")
        await verified_telegram(container, user.id, "@Alice_TG")
        account = await container.directory.get(user.id)
        assert account.telegram is not None
        assert account.telegram.username == "Alice_TG"
        assert account.telegram.verified is True
        assert account.telegram.verification_code is None

    async def test_username_bound_elsewhere(self, container, make_user):
        alice = await make_user("Alice")
        bob = await make_user("Bobby")
        await container.verification.bind_telegram(alice.id, "shared")
        with pytest.raises(DuplicateError):
            await container.verification.bind_telegram(bob.id, "@SHARED")

    async def test_expired_telegram_code(self, container, clock, make_user):
        user = await make_user("Alice")
        await container.verification.bind_telegram(user.id, "alice_tg")
        issued = await container.verification.issue_code("telegram", user.id)
        assert len(issued["code"]) == 6
        clock.advance(10 * MINUTE_MS + 1)
        with pytest.raises(ExpiredError):
            await container.verification.verify_code("telegram", user.id, issued["code"])
        account = await container.directory.get(user.id)
        assert account.telegram.verification_code is None
        assert account.telegram.code_expires is None

    async def test_only_verified_bindings_found(self, container, make_user):
        user = await make_user("Alice")
        await container.verification.bind_telegram(user.id, "alice_tg")
        assert await container.directory.find_by_telegram_username("alice_tg") is None
        await container.verification.unbind_telegram(user.id)
        assert (await container.directory.get(user.id)).telegram is None


class TestPasswordReset:
    async def test_full_reset(self, container, kv, make_user):
        user = await make_user("Alice")
        await verified_telegram(container, user.id)

        issued = await container.verification.request_password_reset("@alice_tg")
        assert issued["userId"] == user.id
        assert keys.telegram_reset("alice_tg") in kv.dump()

        account = await container.verification.reset_password("alice_tg", issued["code"], "BrandNew42")
        assert verify_password("BrandNew42", account.password)
        assert keys.telegram_reset("alice_tg") not in kv.dump()

    async def test_unverified_binding_cannot_reset(self, container, make_user):
        user = await make_user("Alice")
        await container.verification.bind_telegram(user.id, "alice_tg")
        with pytest.raises(NotFoundError):
            await container.verification.request_password_reset("alice_tg")

    async def test_attempts_are_limited(self, container, kv, make_user):
        user = await make_user("Alice")
        await verified_telegram(container, user.id)
        issued = await container.verification.request_password_reset("alice_tg")
        wrong = "100000" if issued["code"] != "100000" else "100001"

        for remaining in range(4, -1, -1):
            with pytest.raises(InvalidError, match=f"Attempts left: {remaining}"):
                await container.verification.verify_reset_code("alice_tg", wrong)
        with pytest.raises(RateExceededError):
            await container.verification.verify_reset_code("alice_tg", issued["code"])
        assert keys.telegram_reset("alice_tg") not in kv.dump()

    async def test_expired_reset(self, container, clock, make_user):
        user = await make_user("Alice")
        await verified_telegram(container, user.id)
        issued = await container.verification.request_password_reset("alice_tg")
        clock.advance(10 * MINUTE_MS + 1)
        with pytest.raises(ExpiredError):
            await container.verification.verify_reset_code("alice_tg", issued["code"])

    async def test_malformed_code(self, container):
        with pytest.raises(InvalidError):
            await container.verification.verify_reset_code("alice_tg", "12")

    async def test_no_pending_reset(self, container):
        with pytest.raises(NotFoundError):
            await container.verification.verify_reset_code("nobody", "123456")
