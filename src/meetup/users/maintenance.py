"""Sweeps, snapshots, schema migration and directory statistics.

``cleanup`` runs on every start and from the scheduled worker, so each
step is idempotent and isolated: a failing step is logged and the rest
still run.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from meetup.clock import DAY_MS, Clock
from meetup.errors import NotFoundError
from meetup.storage import keys
from meetup.storage.repository import DocumentStore, dumps, json_document
from meetup.users.models import SCHEMA_VERSION, Account, NewAccount

if TYPE_CHECKING:
    from meetup.config import Settings
    from meetup.social.friends import FriendGraph
    from meetup.social.qr import QrRegistry
    from meetup.users.service import UserDirectory

logger = structlog.get_logger()

BACKUP_FORMAT = "2.0"

BETA_MODERATOR = NewAccount(
    id="beta_moderator_001",
    email="moderator2025@mail.ru",
    nickname="Moderator2025",
    password="TestMeetUp2025",
    role="moderator",
    referral_code="BETA-MOD-2025",
)


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0


class Maintenance:
    def __init__(
        self,
        directory: UserDirectory,
        friends: FriendGraph,
        qr: QrRegistry,
        store: DocumentStore,
        *,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.directory = directory
        self.friends = friends
        self.qr = qr
        self.store = store
        self.settings = settings
        self.clock = clock
        self.backup_doc = json_document(store, keys.BACKUP)
        self.backups_doc = json_document(store, keys.BACKUPS, default=list)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def cleanup(self) -> dict[str, int]:
        """Run every sweep step; returns the number of items each removed or cleared."""
        steps: list[tuple[str, Callable[[], Awaitable[int]]]] = [
            ("scheduled_deletions", self.purge_scheduled_deletions),
            ("friend_requests", self.friends.cleanup_old_requests),
            ("referral_codes", self.expire_referral_codes),
            ("qr_records", self.qr.purge_expired),
            ("telegram_reset_codes", self.purge_telegram_reset_codes),
            ("phone_codes", self.expire_phone_codes),
        ]
        results: dict[str, int] = {}
        for name, step in steps:
            try:
                results[name] = await step()
            except Exception:
                logger.warning("cleanup_step_failed", step=name, exc_info=True)
                results[name] = -1
        logger.info("cleanup_complete", **results)
        return results

    async def _sweep_accounts(self, needs: Callable[[Account], bool], fix: Callable[[Account], None]) -> list[str]:
        """Apply ``fix`` to accounts matching ``needs``; skips the write when none match."""
        if not any(needs(a) for a in await self.directory.all()):
            return []
        now = self.clock()

        def apply(accounts: list[Account]) -> list[str]:
            touched = []
            for account in accounts:
                if needs(account):
                    fix(account)
                    account.touch(now)
                    touched.append(account.id)
            return touched

        return await self.directory.accounts.mutate(apply)

    async def purge_scheduled_deletions(self) -> int:
        now = self.clock()

        def due(account: Account) -> bool:
            return account.scheduled_for_deletion is not None and account.scheduled_for_deletion <= now

        if not any(due(a) for a in await self.directory.all()):
            return 0

        def remove(accounts: list[Account]) -> list[str]:
            gone = [a.id for a in accounts if due(a)]
            accounts[:] = [a for a in accounts if not due(a)]
            return gone

        removed = await self.directory.accounts.mutate(remove)
        for user_id in removed:
            await self.directory.purge_user_data(user_id)
            logger.info("scheduled_account_deleted", user_id=user_id)
        current = await self.directory.current_user()
        if current is not None and current.id in removed:
            await self.directory.session.remove()
        return len(removed)

    async def expire_referral_codes(self) -> int:
        cutoff = self.clock() - self.settings.referral_ttl_days * DAY_MS

        def stale(account: Account) -> bool:
            return bool(account.referral_generated_at) and account.referral_generated_at < cutoff

        def clear(account: Account) -> None:
            account.referral_code = None
            account.referral_generated_at = None

        return len(await self._sweep_accounts(stale, clear))

    async def expire_phone_codes(self) -> int:
        now = self.clock()

        def stale(account: Account) -> bool:
            return bool(account.phone_verification_expires) and account.phone_verification_expires < now

        def clear(account: Account) -> None:
            account.phone_verification_code = None
            account.phone_verification_expires = None
            account.phone_verification_sent_at = None

        return len(await self._sweep_accounts(stale, clear))

    async def purge_telegram_reset_codes(self) -> int:
        now = self.clock()
        removed = 0
        for key in await self.store.list_keys(keys.TELEGRAM_RESET_PREFIX):
            doc = json_document(self.store, key)
            reset = await doc.load_all()
            expires = reset.get("expiresAt")
            if isinstance(expires, (int, float)) and now > expires:
                await doc.remove()
                removed += 1
        if removed:
            logger.info("telegram_reset_codes_purged", removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def backup(self) -> dict[str, Any]:
        """Snapshot accounts and friend requests; keeps the last ``backup_retention``."""
        snapshot = {
            "users": [a.to_storage() for a in await self.directory.all()],
            "friendRequests": [r.to_storage() for r in await self.friends.all_requests()],
            "timestamp": self.clock(),
            "version": BACKUP_FORMAT,
        }
        await self.backup_doc.replace(snapshot)
        retention = self.settings.backup_retention

        def push(backups: list[Any]) -> None:
            backups.append(snapshot)
            if len(backups) > retention:
                del backups[: len(backups) - retention]

        await self.backups_doc.mutate(push)
        logger.info("backup_created", users=len(snapshot["users"]), requests=len(snapshot["friendRequests"]))
        return snapshot

    async def snapshot_on_save(self, _users: Any) -> None:
        """Hook for the accounts collection: snapshot after every write."""
        await self.backup()

    async def restore(self) -> None:
        """Write the latest snapshot back and drop the cached documents."""
        snapshot = await self.backup_doc.load_all()
        if not snapshot:
            msg = "No backup found"
            raise NotFoundError(msg)

        for key, field in ((keys.USERS, "users"), (keys.FRIEND_REQUESTS, "friendRequests")):
            if field not in snapshot:
                continue
            async with self.store.lock(key):
                await self.store.kv.set(key, dumps(snapshot[field]))
                self.store.clear_cache(key)
        logger.info("backup_restored", timestamp=snapshot.get("timestamp"))

    # ------------------------------------------------------------------
    # Migration and startup
    # ------------------------------------------------------------------

    async def _legacy_ids(self) -> set[str]:
        raw = await self.store.kv.get(keys.USERS)
        if raw is None:
            return set()
        try:
            records = json.loads(raw)
        except ValueError:
            return set()
        legacy = set()
        for record in records if isinstance(records, list) else []:
            if not isinstance(record, dict):
                continue
            metadata = record.get("metadata")
            version = metadata.get("version") if isinstance(metadata, dict) else None
            if not isinstance(version, int) or version < SCHEMA_VERSION:
                legacy.add(record.get("id"))
        return legacy

    async def migrate(self) -> int:
        """Rewrite records older than the current schema with defaults filled."""
        legacy = await self._legacy_ids()
        if not legacy:
            return 0

        def upgrade(account: Account) -> None:
            account.metadata.version = SCHEMA_VERSION
            if not account.metadata.created:
                account.metadata.created = self.clock()

        migrated = await self._sweep_accounts(lambda a: a.id in legacy or a.metadata.version < SCHEMA_VERSION, upgrade)
        logger.info("accounts_migrated", count=len(migrated))
        return len(migrated)

    async def seed_beta_accounts(self) -> None:
        await self.directory.add_beta_user(BETA_MODERATOR)

    async def initialize(self) -> dict[str, Any]:
        """Migrate, sweep, seed the beta moderator and snapshot."""
        summary: dict[str, Any] = {}
        try:
            summary["migrated"] = await self.migrate()
        except Exception:
            logger.warning("migration_failed", exc_info=True)
        summary["cleanup"] = await self.cleanup()
        if self.settings.seed_beta_accounts:
            try:
                await self.seed_beta_accounts()
            except Exception:
                logger.warning("beta_seed_failed", exc_info=True)
        try:
            await self.backup()
        except Exception:
            logger.warning("backup_failed", exc_info=True)
        logger.info("directory_initialized", **{k: v for k, v in summary.items() if k != "cleanup"})
        return summary

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def system_stats(self) -> dict[str, Any]:
        users = await self.directory.all()
        requests = await self.friends.all_requests()
        qr = [r for r in requests if r.metadata.via_qr]
        qr_accepted = sum(1 for r in qr if r.status == "accepted")
        telegram = [u for u in users if u.telegram is not None]
        telegram_verified = sum(1 for u in telegram if u.telegram and u.telegram.verified)
        phone = [u for u in users if u.phone_number]
        phone_verified = sum(1 for u in phone if u.phone_verified)

        return {
            "totalUsers": len(users),
            "onlineUsers": sum(1 for u in users if u.status == "online" and not u.invisible),
            "totalFriendships": sum(1 for r in requests if r.status == "accepted"),
            "pendingRequests": sum(1 for r in requests if r.status == "pending"),
            "activeToday": await self.directory.active_on(self.clock()),
            "averageFriends": (sum(u.stats.friends_count for u in users) / len(users)) if users else 0,
            "totalReferrals": sum(1 for u in users if u.referred_by),
            "activeReferrers": sum(1 for u in users if u.stats.referrals_count > 0),
            "qrFriendRequests": len(qr),
            "qrAcceptedRequests": qr_accepted,
            "qrSuccessRate": _rate(qr_accepted, len(qr)),
            "telegramUsers": len(telegram),
            "verifiedTelegramUsers": telegram_verified,
            "telegramVerificationRate": _rate(telegram_verified, len(telegram)),
            "phoneUsers": len(phone),
            "verifiedPhoneUsers": phone_verified,
            "phoneVerificationRate": _rate(phone_verified, len(phone)),
            "dualVerifiedUsers": sum(
                1 for u in users if u.telegram and u.telegram.verified and u.phone_number and u.phone_verified
            ),
            "totalBetaUsers": sum(1 for u in users if u.is_beta),
            "moderatorUsers": sum(1 for u in users if u.role == "moderator"),
        }
