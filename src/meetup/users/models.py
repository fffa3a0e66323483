"""Account records as stored under ``meetup_users``.

Stored JSON keeps camelCase keys and epoch-millisecond timestamps; the
models expose snake_case attributes through aliases. Unknown keys are
kept so records round-trip without loss.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from meetup.errors import SchemaVersionError

SCHEMA_VERSION = 2
DEFAULT_POSITION = (55.751244, 37.618423)


def fallback(allowed: tuple[str, ...], default: str) -> Callable[[Any], Any]:
    """Before-validator replacing values outside ``allowed`` with ``default``."""

    def coerce(v: Any) -> Any:
        return v if v in allowed else default

    return coerce


Status = Annotated[Literal["online", "offline", "away"], BeforeValidator(fallback(("online", "offline", "away"), "offline"))]
Privacy = Annotated[Literal["public", "friends", "private"], BeforeValidator(fallback(("public", "friends", "private"), "public"))]
Theme = Annotated[Literal["dark", "light", "auto"], BeforeValidator(fallback(("dark", "light", "auto"), "dark"))]
Role = Annotated[Literal["user", "moderator"], BeforeValidator(fallback(("user", "moderator"), "user"))]
Number = int | float


class StoredModel(BaseModel):
    """Base for every persisted record."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        extra="allow",
    )

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class AccountStats(StoredModel):
    friends_count: Number = 0
    total_distance: Number = 0
    online_hours: Number = 0
    total_friends: Number = 0
    meeting_count: Number = 0
    referrals_count: Number = 0
    referral_bonus: Number = 0
    qr_invitations: Number = 0
    qr_invitations_received: Number = 0
    sent_requests: Number = 0

    @field_validator("*", mode="before")
    @classmethod
    def numeric_or_zero(cls, v: Any) -> Any:
        """Missing or non-numeric counters read as 0."""
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            try:
                return float(v)
            except (TypeError, ValueError):
                return 0
        return v

    def bump(self, name: str, amount: float = 1) -> None:
        """Add ``amount`` to a counter, creating unknown counters at 0."""
        attr = name if name in type(self).model_fields else _field_for_alias(type(self), name)
        if attr is not None:
            setattr(self, attr, getattr(self, attr) + amount)
            return
        extra = self.__pydantic_extra__ if self.__pydantic_extra__ is not None else {}
        extra[name] = (extra.get(name) or 0) + amount


def _field_for_alias(model: type[BaseModel], alias: str) -> str | None:
    for name, info in model.model_fields.items():
        if info.alias == alias:
            return name
    return None


class AccountSettings(StoredModel):
    notifications: bool = True
    show_on_map: bool = True
    privacy: Privacy = "public"
    theme: Theme = "dark"

    @field_validator("notifications", "show_on_map", mode="before")
    @classmethod
    def truthy(cls, v: Any) -> bool:
        return True if v is None else bool(v)


class RecordMetadata(StoredModel):
    version: int = SCHEMA_VERSION
    created: int = 0
    modified: int = 0


class TelegramBinding(StoredModel):
    username: str = ""
    verified: bool = False
    verification_code: str | None = None
    code_expires: int | None = None
    bound_at: str | None = None


class Account(StoredModel):
    """A registered user."""

    id: str
    email: str = ""
    nickname: str = "User"
    password: str = ""

    avatar: str | None = ""
    about: str = ""
    position: list[float] = Field(default_factory=lambda: list(DEFAULT_POSITION))
    status: Status = "offline"
    invisible: bool = False
    registered_at: str | None = None
    last_seen: str | None = None
    last_active: int | None = None

    phone_number: str | None = None
    phone_verified: bool = False
    phone_verification_code: str | None = None
    phone_verification_expires: int | None = None
    phone_verification_sent_at: int | None = None
    phone_verified_at: str | None = None
    telegram: TelegramBinding | None = None

    referral_code: str | None = None
    referral_generated_at: int | None = None
    referred_by: str | None = None
    stats: AccountStats = Field(default_factory=AccountStats)

    settings: AccountSettings = Field(default_factory=AccountSettings)
    metadata: RecordMetadata = Field(default_factory=RecordMetadata)
    role: Role = "user"
    is_verified: bool = False
    is_active: bool = True
    is_beta: bool = False
    scheduled_for_deletion: int | None = None
    last_password_change: int | None = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: Any) -> str:
        """Normalize email to lowercase."""
        return (v or "").lower().strip()

    @field_validator("nickname", mode="before")
    @classmethod
    def strip_nickname(cls, v: Any) -> str:
        return (v or "").strip() or "User"

    @field_validator("position", mode="before")
    @classmethod
    def position_or_default(cls, v: Any) -> list[float]:
        if isinstance(v, (list, tuple)) and len(v) == 2 and is_valid_position(v):
            return [float(v[0]), float(v[1])]
        return list(DEFAULT_POSITION)

    @field_validator("invisible", "phone_verified", "is_verified", "is_beta", mode="before")
    @classmethod
    def falsy_default(cls, v: Any) -> bool:
        return bool(v)

    @field_validator("is_active", mode="before")
    @classmethod
    def active_default(cls, v: Any) -> bool:
        return True if v is None else bool(v)

    @field_validator("stats", "settings", "metadata", mode="before")
    @classmethod
    def object_or_empty(cls, v: Any) -> Any:
        return v if isinstance(v, (dict, BaseModel)) else {}

    def touch(self, now: int) -> None:
        """Advance ``metadata.modified``; strictly increasing per record."""
        self.metadata.modified = max(now, self.metadata.modified + 1)

    def public_view(self) -> dict[str, Any]:
        """Stored form minus the password digest and pending codes."""
        data = self.to_storage()
        data.pop("password", None)
        data.pop("phoneVerificationCode", None)
        if isinstance(data.get("telegram"), dict):
            data["telegram"].pop("verificationCode", None)
        return data

    def summary(self) -> dict[str, Any]:
        return {"id": self.id, "nickname": self.nickname, "avatar": self.avatar, "status": self.status}


class NewAccount(BaseModel):
    """Input for registration and beta seeding."""

    email: str
    nickname: str
    password: str
    avatar: str | None = None
    about: str = ""
    position: list[float] | None = None
    phone_number: str | None = None
    referral_code: str | None = None
    referred_by: str | None = None
    id: str | None = None
    role: Role = "user"
    registered_at: str | None = None


def is_valid_position(position: Any) -> bool:
    try:
        lat, lng = float(position[0]), float(position[1])
    except (TypeError, ValueError, IndexError):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def decode_account(raw: Any) -> Account:
    """Validate a stored account record, filling defaults.

    Raises SchemaVersionError for records written by a newer schema.
    """
    if not isinstance(raw, dict):
        msg = "Account record is not an object"
        raise TypeError(msg)
    metadata = raw.get("metadata")
    version = metadata.get("version", 1) if isinstance(metadata, dict) else 1
    if isinstance(version, int) and version > SCHEMA_VERSION:
        msg = f"Account {raw.get('id')} has schema version {version}"
        raise SchemaVersionError(msg)
    if not raw.get("id"):
        msg = "Account record has no id"
        raise ValueError(msg)
    return Account.model_validate(raw)


def encode_account(account: Account) -> dict[str, Any]:
    return account.to_storage()
