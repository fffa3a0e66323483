"""User directory business logic.

Accounts live in one JSON array under ``meetup_users``; the friend
request array is owned here too because account deletion cascades into
it. Every write goes through ``RecordCollection.mutate`` so uniqueness
checks and the write happen under the same per-key lock.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from meetup.clock import DAY_MS, Clock, date_key, to_iso
from meetup.errors import (
    DeactivatedError,
    DuplicateError,
    InvalidError,
    NotFoundError,
    StorageFailureError,
    WrongPasswordError,
)
from meetup.social.models import FriendRequest, decode_request, encode_request
from meetup.storage import keys
from meetup.storage.repository import DocumentStore, RecordCollection, Repository, SavedHook
from meetup.users.activity import haversine_km
from meetup.users.codes import (
    clean_phone,
    clean_telegram_username,
    generate_referral_code,
    new_user_id,
    normalize_referral_code,
)
from meetup.users.models import (
    DEFAULT_POSITION,
    Account,
    NewAccount,
    RecordMetadata,
    decode_account,
    encode_account,
    is_valid_position,
)
from meetup.users.password import check_needs_rehash, hash_password, validate_password_strength, verify_password

if TYPE_CHECKING:
    from meetup.collaborators import LocationProvider
    from meetup.config import Settings
    from meetup.users.activity import ActivityTracker

logger = structlog.get_logger()

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_NICKNAME_LENGTH = 3

# Fields a patch may write, by stored name.
PATCHABLE_FIELDS = frozenset(
    {
        "nickname",
        "avatar",
        "status",
        "invisible",
        "position",
        "about",
        "settings",
        "stats",
        "referralCode",
        "referralGeneratedAt",
        "referredBy",
        "password",
        "lastSeen",
        "lastActive",
        "telegram",
        "phoneNumber",
        "phoneVerified",
        "phoneVerificationCode",
        "phoneVerificationExpires",
        "phoneVerificationSentAt",
        "isBeta",
        "role",
    }
)

Updater = Callable[[Account, list[Account]], Any]


def _field_name(stored: str) -> str:
    for name, info in Account.model_fields.items():
        if info.alias == stored or name == stored:
            return name
    msg = f"Unknown account field {stored}"
    raise InvalidError(msg)


def _by_id(accounts: list[Account], user_id: str) -> Account:
    for account in accounts:
        if account.id == user_id:
            return account
    msg = f"User {user_id} not found"
    raise NotFoundError(msg)


def _nickname_taken(accounts: list[Account], nickname: str, exclude_id: str | None = None) -> bool:
    wanted = nickname.strip().lower()
    return any(a.nickname.lower() == wanted and a.id != exclude_id for a in accounts)


def _email_taken(accounts: list[Account], email: str, exclude_id: str | None = None) -> bool:
    wanted = email.strip().lower()
    return any(a.email == wanted and a.id != exclude_id for a in accounts)


def _phone_taken(accounts: list[Account], phone: str, exclude_id: str | None = None) -> bool:
    wanted = clean_phone(phone)
    return bool(wanted) and any(clean_phone(a.phone_number) == wanted and a.id != exclude_id for a in accounts)


def _referral_taken(accounts: list[Account], code: str, exclude_id: str | None = None) -> bool:
    wanted = normalize_referral_code(code)
    return any(
        a.referral_code and normalize_referral_code(a.referral_code) == wanted and a.id != exclude_id for a in accounts
    )


def unique_referral_code(accounts: list[Account], now_ms: int, user_id: str | None = None) -> str:
    """A referral code no other account holds."""
    code = generate_referral_code(now_ms, user_id)
    while _referral_taken(accounts, code, exclude_id=user_id):
        code = generate_referral_code(now_ms, user_id)
    return code


def _claim_referral_code(account: Account, accounts: list[Account], requested: str | None, now_ms: int) -> None:
    """Give a new account a unique code; a requested code already in use is a duplicate."""
    if requested:
        if _referral_taken(accounts, requested, exclude_id=account.id):
            msg = "Referral code already in use"
            raise DuplicateError(msg)
        account.referral_code = requested
    else:
        account.referral_code = unique_referral_code(accounts, now_ms, account.id)


class UserDirectory:
    """Accounts, the session pointer, lookups and profile updates."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        settings: Settings,
        clock: Clock,
        location: LocationProvider,
        activity: ActivityTracker,
        on_users_saved: SavedHook | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.location = location
        self.activity = activity
        self.accounts: RecordCollection[Account] = RecordCollection(
            store, keys.USERS, validate=decode_account, serialize=encode_account, on_saved=on_users_saved
        )
        self.requests: RecordCollection[FriendRequest] = RecordCollection(
            store, keys.FRIEND_REQUESTS, validate=decode_request, serialize=encode_request
        )
        self.session: Repository[Account | None] = Repository(
            store,
            keys.CURRENT_USER,
            decode=decode_account,
            encode=lambda account: account.to_storage() if account else None,
            default=lambda: None,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def all(self) -> list[Account]:
        return await self.accounts.load_all()

    async def find(self, identifier: str | None) -> Account | None:
        """Match email, nickname or id (case-insensitive) or a normalized phone number."""
        if not identifier or not isinstance(identifier, str):
            return None
        term = identifier.strip().lower()
        if not term:
            return None
        phone = clean_phone(term)
        for account in await self.all():
            if term in (account.email, account.nickname.lower(), account.id.lower()):
                return account
            if phone and len(phone) >= 10 and clean_phone(account.phone_number) == phone:
                return account
        return None

    async def get(self, user_id: str) -> Account:
        """Account by exact id; raises NotFoundError."""
        return _by_id(await self.all(), user_id)

    async def find_by_email(self, email: str | None) -> Account | None:
        if not email:
            return None
        wanted = email.strip().lower()
        return next((a for a in await self.all() if a.email == wanted), None)

    async def is_email_used(self, email: str | None, exclude_id: str | None = None) -> bool:
        if not email:
            return False
        return _email_taken(await self.all(), email, exclude_id)

    async def is_nickname_used(self, nickname: str | None, exclude_id: str | None = None) -> bool:
        if not nickname:
            return False
        return _nickname_taken(await self.all(), nickname, exclude_id)

    async def find_by_role(self, role: str) -> list[Account]:
        return [a for a in await self.all() if a.role == role]

    async def get_moderators(self) -> list[Account]:
        return await self.find_by_role("moderator")

    async def is_moderator(self, user_id: str) -> bool:
        account = await self.find(user_id)
        return account is not None and account.role == "moderator"

    async def find_by_referral_code(self, code: str | None) -> Account | None:
        if not code:
            return None
        wanted = normalize_referral_code(code)
        return next(
            (a for a in await self.all() if a.referral_code and normalize_referral_code(a.referral_code) == wanted),
            None,
        )

    async def find_by_telegram_username(self, username: str | None) -> Account | None:
        """Only verified bindings are matched."""
        wanted = clean_telegram_username(username).lower()
        if not wanted:
            return None
        for account in await self.all():
            tg = account.telegram
            if tg and tg.verified and tg.username.lower() == wanted:
                return account
        return None

    async def search(
        self,
        query: str,
        *,
        exclude_current: bool = True,
        only_online: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Account]:
        """Nickname substring search, online accounts first then by nickname."""
        if not query or len(query.strip()) < 2:
            return []
        term = query.strip().lower()
        current = await self.current_user() if exclude_current else None

        results = []
        for account in await self.all():
            if current is not None and account.id == current.id:
                continue
            if only_online and (account.status != "online" or account.invisible):
                continue
            if term in account.nickname.lower():
                results.append(account)

        results.sort(key=lambda a: (a.status != "online", a.nickname.lower()))
        return results[offset : offset + limit]

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def _resolve_position(self, requested: list[float] | None) -> list[float]:
        if requested is not None and is_valid_position(requested):
            return [float(requested[0]), float(requested[1])]
        try:
            lat, lng = await self.location.get_current_position()
            if is_valid_position((lat, lng)):
                return [float(lat), float(lng)]
        except Exception:
            logger.info("location_unavailable", exc_info=True)
        return list(self.settings.default_position or DEFAULT_POSITION)

    def _validate_new(self, data: NewAccount) -> tuple[str, str]:
        email = data.email.strip().lower()
        nickname = data.nickname.strip()
        if not EMAIL_RE.match(email):
            msg = "Invalid email"
            raise InvalidError(msg)
        if len(nickname) < MIN_NICKNAME_LENGTH:
            msg = f"Nickname must be at least {MIN_NICKNAME_LENGTH} characters"
            raise InvalidError(msg)
        if data.phone_number is not None and len(clean_phone(data.phone_number)) < 10:
            msg = "Invalid phone number"
            raise InvalidError(msg)
        return email, nickname

    @staticmethod
    def _check_unique(accounts: list[Account], email: str, nickname: str, phone: str | None) -> None:
        if _email_taken(accounts, email):
            msg = "Email already in use"
            raise DuplicateError(msg)
        if _nickname_taken(accounts, nickname):
            msg = "Nickname already taken"
            raise DuplicateError(msg)
        if phone and _phone_taken(accounts, phone):
            msg = "Phone number already in use"
            raise DuplicateError(msg)

    async def register(self, data: NewAccount) -> Account:
        """
        Create an account.

        Raises:
            DuplicateError: email, nickname or phone already in use.
            InvalidError: malformed email/nickname or weak password.
        """
        email, nickname = self._validate_new(data)
        self._check_unique(await self.all(), email, nickname, data.phone_number)
        validate_password_strength(
            data.password,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )

        password_hash = hash_password(data.password)
        position = await self._resolve_position(data.position)
        now = self.clock()
        user_id = new_user_id(now)

        account = Account(
            id=user_id,
            email=email,
            nickname=nickname,
            password=password_hash,
            avatar=data.avatar or "",
            about=data.about,
            position=position,
            status="online",
            registered_at=to_iso(now),
            last_seen=to_iso(now),
            last_active=now,
            phone_number=data.phone_number,
            referral_code=data.referral_code,
            referral_generated_at=now,
            referred_by=data.referred_by,
            metadata=RecordMetadata(created=now, modified=now),
        )

        def append(accounts: list[Account]) -> None:
            self._check_unique(accounts, email, nickname, data.phone_number)
            _claim_referral_code(account, accounts, data.referral_code, now)
            accounts.append(account)

        await self.accounts.mutate(append)
        await self.activity.create_profile(user_id)
        logger.info("user_registered", user_id=user_id, email=email)
        return account

    async def add_beta_user(self, data: NewAccount) -> Account:
        """Seed a verified beta account; returns the existing one when the email is taken."""
        existing = await self.find_by_email(data.email)
        if existing is not None:
            logger.info("beta_user_exists", email=existing.email)
            return existing

        email, nickname = self._validate_new(data)
        now = self.clock()
        account = Account(
            id=data.id or new_user_id(now),
            email=email,
            nickname=nickname,
            password=hash_password(data.password),
            avatar=data.avatar or "",
            about=data.about,
            position=data.position if data.position and is_valid_position(data.position) else list(self.settings.default_position),
            status="online",
            registered_at=data.registered_at or to_iso(now),
            last_seen=to_iso(now),
            last_active=now,
            phone_number=data.phone_number,
            referral_code=data.referral_code,
            referral_generated_at=now,
            referred_by=data.referred_by,
            metadata=RecordMetadata(created=now, modified=now),
            role=data.role,
            is_verified=True,
            is_beta=True,
        )

        def append(accounts: list[Account]) -> Account:
            found = next((a for a in accounts if a.email == email), None)
            if found is not None:
                return found
            self._check_unique(accounts, email, nickname, data.phone_number)
            _claim_referral_code(account, accounts, data.referral_code, now)
            accounts.append(account)
            return account

        stored = await self.accounts.mutate(append)
        if stored is account:
            await self.activity.create_profile(account.id)
            logger.info("beta_user_added", user_id=account.id, role=account.role)
        return stored

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def current_user(self) -> Account | None:
        return await self.session.load_all()

    async def set_current_user(self, account: Account) -> None:
        if not await self.session.replace(account):
            msg = "Could not store the session"
            raise StorageFailureError(msg)
        try:
            await self.activity.record_session(account.id)
        except Exception:
            logger.warning("activity_update_failed", user_id=account.id, exc_info=True)

    async def authenticate(self, identifier: str, password: str) -> Account:
        """
        Log in by email, nickname, id or phone number.

        Raises:
            NotFoundError, WrongPasswordError, DeactivatedError.
        """
        account = await self.find(identifier)
        if account is None:
            logger.info("login_unknown_user", identifier=identifier)
            msg = "User not found"
            raise NotFoundError(msg)
        if not verify_password(password, account.password):
            logger.info("login_wrong_password", user_id=account.id)
            msg = "Wrong password"
            raise WrongPasswordError(msg)
        if not account.is_active:
            msg = "Account is deactivated"
            raise DeactivatedError(msg)

        new_hash = hash_password(password) if check_needs_rehash(account.password) else None
        now = self.clock()

        def login(target: Account, _accounts: list[Account]) -> None:
            target.status = "online"
            target.last_seen = to_iso(now)
            target.last_active = now
            if new_hash is not None:
                target.password = new_hash

        updated = await self.update(account.id, login)
        await self.set_current_user(updated)
        if new_hash is not None:
            logger.info("password_rehashed", user_id=account.id)
        logger.info("user_logged_in", user_id=account.id)
        return updated

    async def logout(self) -> bool:
        """Mark the session account offline and clear the pointer."""
        current = await self.current_user()
        if current is not None:
            now = self.clock()

            def offline(target: Account, _accounts: list[Account]) -> None:
                target.status = "offline"
                target.last_seen = to_iso(now)

            try:
                await self.update(current.id, offline)
            except NotFoundError:
                pass
        await self.session.remove()
        return True

    async def _refresh_session(self, account: Account) -> None:
        current = await self.current_user()
        if current is not None and current.id == account.id:
            await self.session.replace(account)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def update(self, user_id: str, fn: Updater) -> Account:
        """Apply ``fn(account, all_accounts)`` and persist.

        Bumps ``metadata.modified`` and refreshes the session pointer when
        it refers to this account. Raises NotFoundError.
        """
        now = self.clock()

        def apply(accounts: list[Account]) -> Account:
            account = _by_id(accounts, user_id)
            try:
                fn(account, accounts)
            except ValidationError as e:
                msg = f"Invalid update: {e.errors()[0].get('msg', e)}"
                raise InvalidError(msg) from e
            account.touch(now)
            return account

        account = await self.accounts.mutate(apply)
        await self._refresh_session(account)
        return account

    async def patch(self, user_id: str, updates: dict[str, Any]) -> Account:
        """
        Write allow-listed fields; other keys are ignored.

        Raises:
            NotFoundError: no such account.
            DuplicateError: nickname taken by another account.
            InvalidError: a value fails validation.
        """
        allowed = {k: v for k, v in updates.items() if k in PATCHABLE_FIELDS}
        if "position" in allowed and not is_valid_position(allowed["position"]):
            msg = "Invalid coordinates"
            raise InvalidError(msg)
        if "password" in allowed:
            validate_password_strength(
                allowed["password"],
                min_length=self.settings.password_min_length,
                max_length=self.settings.password_max_length,
            )
            allowed["password"] = hash_password(allowed["password"])
        now = self.clock()

        def apply(account: Account, accounts: list[Account]) -> None:
            for key, value in allowed.items():
                if key == "nickname":
                    value = (value or "").strip()
                    if len(value) < MIN_NICKNAME_LENGTH:
                        msg = f"Nickname must be at least {MIN_NICKNAME_LENGTH} characters"
                        raise InvalidError(msg)
                    if _nickname_taken(accounts, value, exclude_id=account.id):
                        msg = "Nickname already taken"
                        raise DuplicateError(msg)
                if key == "phoneNumber" and value and _phone_taken(accounts, value, exclude_id=account.id):
                    msg = "Phone number already in use"
                    raise DuplicateError(msg)
                setattr(account, _field_name(key), value)
            if "password" in allowed:
                account.last_password_change = now

        account = await self.update(user_id, apply)
        logger.info("user_patched", user_id=user_id, fields=sorted(allowed))
        return account

    async def increment_stat(self, user_id: str, name: str, amount: float = 1) -> Account | None:
        """Add to a stats counter; unknown accounts are skipped."""

        def bump(account: Account, _accounts: list[Account]) -> None:
            account.stats.bump(name, amount)

        try:
            return await self.update(user_id, bump)
        except NotFoundError:
            logger.info("stat_update_skipped", user_id=user_id, stat=name)
            return None

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete(self, user_id: str) -> None:
        """Hard delete with cascade to friend requests and per-user documents."""

        def remove(accounts: list[Account]) -> None:
            account = _by_id(accounts, user_id)
            accounts.remove(account)

        await self.accounts.mutate(remove)
        await self.purge_user_data(user_id)

        current = await self.current_user()
        if current is not None and current.id == user_id:
            await self.logout()
        logger.info("user_deleted", user_id=user_id)

    async def purge_user_data(self, user_id: str) -> None:
        def drop(requests: list[FriendRequest]) -> int:
            before = len(requests)
            requests[:] = [r for r in requests if not r.involves(user_id)]
            return before - len(requests)

        removed = await self.requests.mutate(drop)
        await self.activity.purge(user_id)
        if removed:
            logger.info("friend_requests_purged", user_id=user_id, count=removed)

    async def schedule_deletion(self, user_id: str, delay_ms: int | None = None) -> Account:
        """Soft delete: the sweep removes the account once the deadline passes."""
        if delay_ms is None:
            delay_ms = self.settings.deletion_grace_days * DAY_MS
        deadline = self.clock() + delay_ms

        def schedule(account: Account, _accounts: list[Account]) -> None:
            account.scheduled_for_deletion = deadline

        return await self.update(user_id, schedule)

    async def cancel_deletion(self, user_id: str) -> Account:
        def cancel(account: Account, _accounts: list[Account]) -> None:
            account.scheduled_for_deletion = None

        return await self.update(user_id, cancel)

    # ------------------------------------------------------------------
    # Geolocation
    # ------------------------------------------------------------------

    async def update_position(self, user_id: str, position: list[float] | tuple[float, float]) -> Account:
        """
        Move an account and record the movement.

        Raises:
            InvalidError: not a ``[lat, lng]`` pair within range.
            NotFoundError: no such account.
        """
        if not isinstance(position, (list, tuple)) or len(position) != 2 or not is_valid_position(position):
            msg = "Invalid coordinates"
            raise InvalidError(msg)
        point = [float(position[0]), float(position[1])]
        now = self.clock()

        def move(account: Account, _accounts: list[Account]) -> None:
            account.position = point
            account.last_seen = to_iso(now)
            account.last_active = now

        account = await self.update(user_id, move)
        distance = await self.activity.record_movement(user_id, point)
        if distance > 0:
            account = await self.increment_stat(user_id, "totalDistance", distance) or account
        return account

    async def get_nearby(self, position: list[float] | tuple[float, float], radius_km: float = 10) -> list[Account]:
        """Visible accounts within ``radius_km``, excluding the session account."""
        current = await self.current_user()
        nearby = []
        for account in await self.all():
            if current is not None and account.id == current.id:
                continue
            if account.invisible or not account.position:
                continue
            if haversine_km(position, account.position) <= radius_km:
                nearby.append(account)
        return nearby

    async def active_on(self, day_ms: int) -> int:
        """Number of accounts last active on the same UTC day as ``day_ms``."""
        today = date_key(day_ms)
        return sum(1 for a in await self.all() if a.last_active and date_key(a.last_active) == today)
