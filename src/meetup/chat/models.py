"""Chat documents: per-user chat lists and the global chat."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import Field, ValidationError, field_validator

from meetup.users.models import StoredModel

logger = structlog.get_logger()

GLOBAL_CHAT_ID = "global_chat_meetup"
SYSTEM_SENDER = "system"


class Message(StoredModel):
    id: str
    sender_id: str
    text: str = ""
    timestamp: int = 0
    read: bool = False
    read_at: int | None = None
    attachments: Any = None
    edited: bool = False
    deleted: bool = False


class GlobalMessage(Message):
    sender_name: str = ""
    type: str = "user"
    is_welcome: bool = False


class Chat(StoredModel):
    """A private chat. Every participant's list holds an identical copy.

    Unread state is kept per participant in ``unread_by``;
    ``unread_count`` is their sum, kept for clients that only read it.
    """

    id: str
    participants: list[str] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    created_at: int = 0
    last_message_at: int | None = None
    unread_count: int = 0
    unread_by: dict[str, int] = Field(default_factory=dict)
    is_group: bool = False
    name: str = ""
    avatar: str | None = None
    custom_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("messages", "participants", mode="before")
    @classmethod
    def list_or_empty(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []

    @field_validator("unread_by", "custom_data", mode="before")
    @classmethod
    def dict_or_empty(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}

    def unread_for(self, user_id: str) -> int:
        if self.unread_by:
            return self.unread_by.get(user_id, 0)
        # Chats written before per-participant counters.
        if not self.unread_count:
            return 0
        return sum(1 for m in self.messages if m.sender_id != user_id and not m.read)

    def sync_unread_count(self) -> None:
        self.unread_count = sum(self.unread_by.values())

    @property
    def sort_key(self) -> int:
        return self.last_message_at or self.created_at

    def is_pair_with(self, user_id: str) -> bool:
        return not self.is_group and len(self.participants) == 2 and user_id in self.participants


class GlobalChatSettings(StoredModel):
    allow_images: bool = True
    max_message_length: int = 1000
    rate_limit: int = 3


class GlobalChat(StoredModel):
    """The community-wide chat; bounded, never deleted."""

    id: str = GLOBAL_CHAT_ID
    name: str = "MeetUP community chat"
    description: str = "The main MeetUP community chat. Every user can talk here."
    avatar: str | None = None
    participants: list[str] = Field(default_factory=list)
    messages: list[GlobalMessage] = Field(default_factory=list)
    created_at: int = 0
    last_message_at: int | None = None
    is_global: bool = True
    total_messages: int = 0
    participant_count: int = 0
    cannot_be_deleted: bool = True
    settings: GlobalChatSettings = Field(default_factory=GlobalChatSettings)

    @field_validator("messages", "participants", mode="before")
    @classmethod
    def list_or_empty(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []


ChatLists = dict[str, list[Chat]]


def decode_chat_lists(data: Any) -> ChatLists:
    """``{userId: [chat, ...]}``; malformed chats are dropped."""
    if not isinstance(data, dict):
        msg = "Chat lists document is not an object"
        raise TypeError(msg)
    lists: ChatLists = {}
    for user_id, chats in data.items():
        decoded = []
        for raw in chats if isinstance(chats, list) else []:
            try:
                decoded.append(Chat.model_validate(raw))
            except ValidationError:
                logger.warning("chat_dropped", user_id=user_id, chat_id=(raw or {}).get("id") if isinstance(raw, dict) else None)
        lists[user_id] = decoded
    return lists


def encode_chat_lists(lists: ChatLists) -> dict[str, Any]:
    return {user_id: [c.to_storage() for c in chats] for user_id, chats in lists.items()}


def decode_global_chat(data: Any) -> GlobalChat | None:
    if data is None:
        return None
    return GlobalChat.model_validate(data)


def encode_global_chat(chat: GlobalChat | None) -> dict[str, Any] | None:
    return chat.to_storage() if chat is not None else None


def welcome_messages(now: int) -> list[GlobalMessage]:
    common = {"sender_id": SYSTEM_SENDER, "sender_name": "MeetUP", "type": "system", "read": True, "is_welcome": True}
    return [
        GlobalMessage(
            id="welcome_message_1",
            text="Welcome to the MeetUP community chat! Talk with everyone in the community here.",
            timestamp=now,
            **common,
        ),
        GlobalMessage(
            id="welcome_message_2",
            text="Chat rules: 1. Respect other members. 2. No spam. 3. Share useful information about meetups.",
            timestamp=now + 1000,
            **common,
        ),
    ]
