"""Cleanup sweep, snapshots, migration and statistics."""

from __future__ import annotations

import json

import pytest

from meetup.clock import DAY_MS, HOUR_MS, MINUTE_MS
from meetup.config import Settings
from meetup.container import Container
from meetup.errors import NotFoundError
from meetup.storage import keys
from meetup.users.models import NewAccount


class TestCleanup:
    async def test_due_deletions_removed(self, container, make_user):
        doomed = await make_user("Doomed")
        kept = await make_user("Keeper")
        await container.directory.schedule_deletion(doomed.id, delay_ms=0)
        await container.directory.schedule_deletion(kept.id)

        result = await container.maintenance.cleanup()

        assert result["scheduled_deletions"] == 1
        assert [a.id for a in await container.directory.all()] == [kept.id]

    async def test_old_rejected_requests_swept(self, container, clock, make_user):
        alice = await make_user("Alice")
        bob = await make_user("Bobby")
        carol = await make_user("Carol")
        rejected = await container.friends.send_request(alice.id, bob.id)
        await container.friends.reject_request(rejected.id)
        await container.friends.send_request(alice.id, carol.id)

        clock.advance(8 * DAY_MS)
        result = await container.maintenance.cleanup()

        assert result["friend_requests"] == 1
        remaining = await container.friends.all_requests()
        assert [r.to_user_id for r in remaining] == [carol.id]

    async def test_any_request_expires_after_retention(self, container, clock, make_user):
        alice = await make_user("Alice")
        bob = await make_user("Bobby")
        await container.friends.send_request(alice.id, bob.id)
        clock.advance(31 * DAY_MS)
        await container.maintenance.cleanup()
        assert await container.friends.all_requests() == []

    async def test_stale_referral_codes_cleared(self, container, clock, make_user):
        user = await make_user("Alice")
        clock.advance(31 * DAY_MS)
        result = await container.maintenance.cleanup()
        assert result["referral_codes"] == 1
        account = await container.directory.get(user.id)
        assert account.referral_code is None
        assert account.referral_generated_at is None

    async def test_expired_codes_and_qr_records(self, container, clock, make_user):
        user = await make_user("Alice")
        await container.verification.add_phone_number(user.id, "+79991234567")
        await container.verification.issue_code("phone", user.id)
        await container.verification.bind_telegram(user.id, "alice_tg")
        issued = await container.verification.issue_code("telegram", user.id)
        await container.verification.verify_code("telegram", user.id, issued["code"])
        await container.verification.request_password_reset("alice_tg")
        await container.invites.generate_friend_qr(user.id)

        clock.advance(25 * HOUR_MS)
        result = await container.maintenance.cleanup()

        assert result["phone_codes"] == 1
        assert result["telegram_reset_codes"] == 1
        assert result["qr_records"] == 1
        assert (await container.directory.get(user.id)).phone_verification_code is None
        assert await container.store.list_keys(keys.TELEGRAM_RESET_PREFIX) == []
        assert await container.qr.records() == {}

    async def test_fresh_state_untouched(self, container, clock, make_user):
        user = await make_user("Alice")
        await container.verification.add_phone_number(user.id, "+79991234567")
        await container.verification.issue_code("phone", user.id)
        clock.advance(MINUTE_MS)
        result = await container.maintenance.cleanup()
        assert all(count == 0 for count in result.values())

    async def test_failing_step_does_not_stop_the_rest(self, container, clock, make_user, monkeypatch):
        user = await make_user("Alice")

        async def broken() -> int:
            raise RuntimeError("qr store down")

        monkeypatch.setattr(container.qr, "purge_expired", broken)
        clock.advance(31 * DAY_MS)
        result = await container.maintenance.cleanup()
        assert result["qr_records"] == -1
        assert result["referral_codes"] == 1
        assert (await container.directory.get(user.id)).referral_code is None


class TestSnapshots:
    async def test_backup_retention(self, container, clock, make_user):
        await make_user("Alice")
        for _ in range(7):
            clock.advance(1000)
            await container.maintenance.backup()
        backups = await container.maintenance.backups_doc.load_all()
        assert len(backups) == container.settings.backup_retention
        assert backups[-1]["timestamp"] == clock()
        latest = await container.maintenance.backup_doc.load_all()
        assert latest["version"] == "2.0"
        assert [u["nickname"] for u in latest["users"]] == ["Alice"]

    async def test_restore_brings_back_accounts(self, container, make_user):
        alice = await make_user("Alice")
        bob = await make_user("Bobby")
        await container.friends.send_request(alice.id, bob.id)
        await container.maintenance.backup()
        await container.directory.delete(alice.id)

        await container.maintenance.restore()

        assert {a.id for a in await container.directory.all()} == {alice.id, bob.id}
        assert len(await container.friends.all_requests()) == 1

    async def test_restore_without_backup(self, container):
        with pytest.raises(NotFoundError):
            await container.maintenance.restore()

    async def test_backup_on_save(self, kv, clock):
        settings = Settings(_env_file=None, seed_beta_accounts=False, backup_on_save=True)
        container = Container(kv, settings, clock=clock)
        user = await container.directory.register(NewAccount(email="a@example.com", nickname="Alice", password="Secret123"))
        latest = await container.maintenance.backup_doc.load_all()
        assert [u["id"] for u in latest["users"]] == [user.id]


class TestMigrationAndStartup:
    async def test_legacy_records_migrated(self, container, kv, clock):
        await kv.set(
            keys.USERS,
            json.dumps(
                [
                    {"id": "usr_old", "email": "old@example.com", "nickname": "OldTimer"},
                    {"id": "usr_new", "email": "new@example.com", "metadata": {"version": 2, "created": 5, "modified": 5}},
                ]
            ),
        )
        assert await container.maintenance.migrate() == 1
        stored = {r["id"]: r for r in json.loads(kv.dump()[keys.USERS])}
        assert stored["usr_old"]["metadata"]["version"] == 2
        assert stored["usr_old"]["metadata"]["created"] == clock()
        assert stored["usr_old"]["stats"]["friendsCount"] == 0
        assert stored["usr_new"]["metadata"]["modified"] == 5
        assert await container.maintenance.migrate() == 0

    async def test_initialize_seeds_moderator_once(self, kv, clock):
        settings = Settings(_env_file=None, seed_beta_accounts=True, backup_on_save=False)
        container = Container(kv, settings, clock=clock)
        await container.maintenance.initialize()
        await container.maintenance.initialize()

        moderators = await container.directory.get_moderators()
        assert [m.id for m in moderators] == ["beta_moderator_001"]
        assert moderators[0].is_beta
        assert await container.directory.is_moderator("beta_moderator_001")
        account = await container.directory.authenticate("moderator2025@mail.ru", "TestMeetUp2025")
        assert account.referral_code == "BETA-MOD-2025"

    async def test_system_stats(self, container, make_user):
        alice = await make_user("Alice")
        bob = await make_user("Bobby")
        carol = await make_user("Carol")
        request = await container.friends.send_request_via_qr(alice.id, bob.id)
        await container.friends.accept_request(request.id)
        await container.friends.send_request(carol.id, alice.id)
        await container.verification.add_phone_number(carol.id, "+79991234567")

        stats = await container.maintenance.system_stats()

        assert stats["totalUsers"] == 3
        assert stats["onlineUsers"] == 3
        assert stats["totalFriendships"] == 1
        assert stats["pendingRequests"] == 1
        assert stats["activeToday"] == 3
        assert stats["averageFriends"] == pytest.approx(2 / 3)
        assert stats["qrFriendRequests"] == 1
        assert stats["qrSuccessRate"] == 100.0
        assert stats["phoneUsers"] == 1
        assert stats["phoneVerificationRate"] == 0
        assert stats["telegramUsers"] == 0
        assert stats["moderatorUsers"] == 0
