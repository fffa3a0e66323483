"""Private chats with per-participant fan-out, plus the global chat.

Private chats live in one document, ``{userId: [chat, ...]}``, with an
identical copy of each chat in every participant's list. A whole
fan-out is one document write, so every copy changes together.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from meetup.chat.models import (
    GLOBAL_CHAT_ID,
    Chat,
    ChatLists,
    GlobalChat,
    GlobalMessage,
    Message,
    decode_chat_lists,
    decode_global_chat,
    encode_chat_lists,
    encode_global_chat,
    welcome_messages,
)
from meetup.clock import Clock
from meetup.errors import InvalidError, NotAParticipantError, NotFoundError, StorageFailureError
from meetup.storage import keys
from meetup.storage.repository import DocumentStore, Repository, json_document
from meetup.users.codes import new_chat_id, new_message_id

if TYPE_CHECKING:
    from meetup.config import Settings

logger = structlog.get_logger()

MIN_SEARCH_LENGTH = 2


@dataclass(frozen=True)
class SearchHit:
    message: Message
    chat_id: str
    chat_name: str


def _valid_user_id(user_id: Any) -> bool:
    return isinstance(user_id, str) and bool(user_id.strip())


def _locate(lists: ChatLists, chat_id: str) -> Chat | None:
    """First copy of ``chat_id`` in any list; all copies are equal."""
    for chats in lists.values():
        for chat in chats:
            if chat.id == chat_id:
                return chat
    return None


def _pair_chat(lists: ChatLists, user_a: str, user_b: str) -> Chat | None:
    """The two users' private chat from whichever list still holds a copy."""
    for chats in lists.values():
        for chat in chats:
            if user_a in chat.participants and chat.is_pair_with(user_b):
                return chat
    return None


def _write_copy(lists: ChatLists, user_id: str, chat: Chat, *, add_missing: bool) -> None:
    chats = lists.setdefault(user_id, [])
    for i, existing in enumerate(chats):
        if existing.id == chat.id:
            chats[i] = chat.model_copy(deep=True)
            return
    if add_missing:
        chats.append(chat.model_copy(deep=True))


def _fan_out(lists: ChatLists, chat: Chat, *, add_missing: bool = True) -> None:
    """Write ``chat`` into every participant's list."""
    for participant in chat.participants:
        _write_copy(lists, participant, chat, add_missing=add_missing)


class ChatStore:
    def __init__(self, store: DocumentStore, *, settings: Settings, clock: Clock) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.chats: Repository[ChatLists] = Repository(
            store, keys.CHATS, decode=decode_chat_lists, encode=encode_chat_lists, default=dict
        )
        self.global_chat: Repository[GlobalChat | None] = Repository(
            store, keys.GLOBAL_CHAT, decode=decode_global_chat, encode=encode_global_chat, default=lambda: None
        )
        self.index = json_document(store, keys.CHAT_INDEX)

    # ------------------------------------------------------------------
    # Private chats
    # ------------------------------------------------------------------

    async def get_user_chats(self, user_id: str) -> list[Chat]:
        """The user's chats, most recently active first."""
        if not _valid_user_id(user_id):
            return []
        lists = await self.chats.load_all()
        return sorted(lists.get(user_id, []), key=lambda c: c.sort_key, reverse=True)

    async def find_chat(self, user_a: str, user_b: str) -> Chat | None:
        if not (_valid_user_id(user_a) and _valid_user_id(user_b)):
            return None
        return next((c for c in await self.get_user_chats(user_a) if c.is_pair_with(user_b)), None)

    async def create_chat(self, user_a: str, user_b: str, name: str | None = None) -> Chat:
        """Return the two users' chat, creating it in both lists if needed."""
        if not (_valid_user_id(user_a) and _valid_user_id(user_b)):
            msg = "Invalid user ids"
            raise InvalidError(msg)
        if user_a == user_b:
            msg = "A chat needs two different users"
            raise InvalidError(msg)

        existing = await self.find_chat(user_a, user_b)
        if existing is not None:
            return existing

        now = self.clock()

        def create(lists: ChatLists) -> tuple[Chat, bool]:
            found = _pair_chat(lists, user_a, user_b)
            if found is not None:
                # Put the chat back into a list that deleted it.
                _fan_out(lists, found)
                return found, False
            chat = Chat(
                id=new_chat_id(now),
                participants=[user_a, user_b],
                created_at=now,
                last_message_at=now,
                unread_by={user_a: 0, user_b: 0},
                name=name or f"Chat {user_a[:8]} & {user_b[:8]}",
            )
            _fan_out(lists, chat)
            return chat, True

        chat, created = await self.chats.mutate(create)
        if created:
            await self._touch_index(chat)
            logger.info("chat_created", chat_id=chat.id, participants=chat.participants)
        return chat

    async def _touch_index(self, chat: Chat) -> None:
        now = self.clock()

        def touch(index: dict[str, Any]) -> None:
            index[chat.id] = {"participants": list(chat.participants), "lastUpdated": now}

        try:
            await self.index.mutate(touch)
        except StorageFailureError:
            logger.warning("chat_index_update_failed", chat_id=chat.id)

    async def send_message(self, chat_id: str, sender_id: str, text: str, attachments: Any = None) -> Message:
        """
        Append a message and write the chat back into every participant's list.

        Participants whose list lost the chat get a fresh copy. Every other
        participant's unread counter goes up by one.

        Raises:
            InvalidError: empty text or missing ids.
            NotFoundError: no list holds ``chat_id``.
            NotAParticipantError: ``sender_id`` is not in the chat.
        """
        text = (text or "").strip()
        if not chat_id or not sender_id or not text:
            msg = "Message text is empty"
            raise InvalidError(msg)

        now = self.clock()
        message = Message(id=new_message_id(now), sender_id=sender_id, text=text, timestamp=now, attachments=attachments)

        def append(lists: ChatLists) -> Chat:
            chat = _locate(lists, chat_id)
            if chat is None:
                msg = f"Chat {chat_id} not found"
                raise NotFoundError(msg)
            if sender_id not in chat.participants:
                msg = "Sender is not a participant of this chat"
                raise NotAParticipantError(msg)
            chat.unread_by = {p: chat.unread_for(p) for p in chat.participants}
            chat.messages.append(message)
            chat.last_message_at = now
            for participant in chat.participants:
                if participant != sender_id:
                    chat.unread_by[participant] += 1
            chat.sync_unread_count()
            _fan_out(lists, chat)
            return chat

        chat = await self.chats.mutate(append)
        await self._touch_index(chat)
        logger.info("message_sent", chat_id=chat_id, message_id=message.id, sender_id=sender_id)
        return message

    async def mark_as_read(self, chat_id: str, user_id: str) -> bool:
        """Zero the reader's unread counter and flag others' messages read, in every copy."""
        if not chat_id or not user_id:
            return False
        own = await self.get_chat_by_id(chat_id, user_id)
        if own is None:
            return False
        now = self.clock()

        def read(lists: ChatLists) -> bool:
            chat = next((c for c in lists.get(user_id, []) if c.id == chat_id), None)
            if chat is None:
                return False
            chat.unread_by = {p: chat.unread_for(p) for p in chat.participants}
            chat.unread_by[user_id] = 0
            for message in chat.messages:
                if message.sender_id != user_id and not message.read:
                    message.read = True
                    message.read_at = now
            chat.sync_unread_count()
            _fan_out(lists, chat, add_missing=False)
            return True

        return await self.chats.mutate(read)

    async def delete_chat_for_user(self, chat_id: str, user_id: str) -> bool:
        """Remove the user's copy only; other participants keep theirs."""
        if not chat_id or not user_id:
            return False
        if await self.get_chat_by_id(chat_id, user_id) is None:
            return False

        def drop(lists: ChatLists) -> bool:
            before = len(lists.get(user_id, []))
            lists[user_id] = [c for c in lists.get(user_id, []) if c.id != chat_id]
            return len(lists[user_id]) != before

        removed = await self.chats.mutate(drop)
        if removed:
            logger.info("chat_deleted_for_user", chat_id=chat_id, user_id=user_id)
        return removed

    async def get_unread_count(self, user_id: str) -> int:
        return sum(c.unread_for(user_id) for c in await self.get_user_chats(user_id))

    def get_last_message(self, chat: Chat | None) -> dict[str, Any]:
        """Last message for chat previews, or a placeholder."""
        if chat is None or not chat.messages:
            return {"text": "No messages yet", "timestamp": chat.created_at if chat else self.clock(), "isEmpty": True}
        last = chat.messages[-1]
        if last.deleted:
            return {"text": "Message deleted", "timestamp": last.timestamp, "isDeleted": True}
        return last.to_storage()

    async def search_messages(self, user_id: str, query: str, limit: int = 20, offset: int = 0) -> list[SearchHit]:
        """Case-insensitive text search over the user's chats, newest first, one page at a time."""
        term = (query or "").strip().lower()
        if len(term) < MIN_SEARCH_LENGTH:
            return []
        hits = [
            SearchHit(message, chat.id, chat.name)
            for chat in await self.get_user_chats(user_id)
            for message in chat.messages
            if not message.deleted and term in message.text.lower()
        ]
        hits.sort(key=lambda h: h.message.timestamp, reverse=True)
        return hits[offset : offset + limit]

    # ------------------------------------------------------------------
    # Global chat
    # ------------------------------------------------------------------

    async def initialize_global_chat(self) -> GlobalChat:
        """Seed the global chat with the welcome messages if it does not exist."""
        async with self.store.lock(keys.GLOBAL_CHAT):
            snapshot = await self.global_chat.load()
            if snapshot.value is not None:
                return snapshot.value
            now = self.clock()
            seeded = GlobalChat(
                messages=welcome_messages(now),
                created_at=now,
                last_message_at=now,
                total_messages=2,
                settings={"max_message_length": self.settings.global_chat_max_message_length},
            )
            if not await self.global_chat.save(seeded, snapshot.version):
                msg = "Could not create the global chat"
                raise StorageFailureError(msg)
        logger.info("global_chat_initialized")
        return seeded

    async def get_global_chat(self) -> GlobalChat:
        chat = await self.global_chat.load_all()
        return chat if chat is not None else await self.initialize_global_chat()

    async def send_to_global(self, sender_id: str, text: str, sender_name: str | None = None) -> GlobalMessage:
        """Append to the global chat, evicting the oldest messages past the cap."""
        text = (text or "").strip()
        if not _valid_user_id(sender_id) or not text:
            msg = "Message text is empty"
            raise InvalidError(msg)
        current = await self.get_global_chat()
        if len(text) > current.settings.max_message_length:
            msg = f"Message is longer than {current.settings.max_message_length} characters"
            raise InvalidError(msg)

        now = self.clock()
        message = GlobalMessage(
            id=new_message_id(now, global_chat=True),
            sender_id=sender_id,
            sender_name=sender_name or f"User {sender_id[:8]}",
            text=text,
            timestamp=now,
        )
        cap = self.settings.global_chat_max_messages

        def append(chat: GlobalChat | None) -> None:
            if chat is None:
                msg = "Global chat is missing"
                raise NotFoundError(msg)
            chat.messages.append(message)
            if len(chat.messages) > cap:
                del chat.messages[: len(chat.messages) - cap]
            chat.last_message_at = now
            chat.total_messages += 1
            chat.participant_count = len(chat.participants)

        await self.global_chat.mutate(append)
        logger.info("global_message_sent", message_id=message.id, sender_id=sender_id)
        return message

    async def get_global_messages(self, limit: int = 50, offset: int = 0) -> list[GlobalMessage]:
        chat = await self.get_global_chat()
        return _page(chat.messages, limit, offset)

    # ------------------------------------------------------------------
    # Either kind
    # ------------------------------------------------------------------

    async def get_chat_by_id(self, chat_id: str, user_id: str | None = None) -> Chat | GlobalChat | None:
        if chat_id == GLOBAL_CHAT_ID:
            return await self.get_global_chat()
        if user_id:
            return next((c for c in await self.get_user_chats(user_id) if c.id == chat_id), None)
        return _locate(await self.chats.load_all(), chat_id)

    async def send_to_chat(
        self,
        chat_id: str,
        sender_id: str,
        text: str,
        sender_name: str | None = None,
        *,
        is_global: bool = False,
        attachments: Any = None,
    ) -> Message:
        if chat_id == GLOBAL_CHAT_ID or is_global:
            return await self.send_to_global(sender_id, text, sender_name)
        return await self.send_message(chat_id, sender_id, text, attachments)

    async def get_messages(
        self, chat_id: str, user_id: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[Message]:
        """Messages in ascending time order; ``limit <= 0`` returns everything from ``offset``."""
        if chat_id == GLOBAL_CHAT_ID:
            return await self.get_global_messages(limit, offset)
        chat = _locate(await self.chats.load_all(), chat_id)
        if chat is None:
            return []
        if user_id is not None and user_id not in chat.participants:
            msg = "Not a participant of this chat"
            raise NotAParticipantError(msg)
        return _page(chat.messages, limit, offset)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def drop_user(self, user_id: str) -> bool:
        """Remove a deleted account's own chat list; other participants keep their copies."""
        lists = await self.chats.load_all()
        if user_id not in lists:
            return False

        def drop(current: ChatLists) -> bool:
            return current.pop(user_id, None) is not None

        return await self.chats.mutate(drop)

    def clear_cache(self) -> None:
        for key in (keys.CHATS, keys.GLOBAL_CHAT, keys.CHAT_INDEX):
            self.store.clear_cache(key)

    async def get_stats(self) -> dict[str, Any]:
        lists = await self.chats.load_all()
        global_chat = await self.global_chat.load_all()
        active = {user_id: chats for user_id, chats in lists.items() if chats}
        private_messages = sum(len(c.messages) for chats in active.values() for c in chats)
        global_messages = len(global_chat.messages) if global_chat else 0
        return {
            "totalUsers": len(active),
            "totalPrivateChats": sum(len(chats) for chats in active.values()),
            "totalMessages": private_messages + global_messages,
            "globalChatMessages": global_messages,
            "storageKeys": [keys.CHATS, keys.GLOBAL_CHAT, keys.CHAT_INDEX],
        }

    async def migrate_from_v1(self) -> bool:
        """Copy chats from the pre-v2 keys when the v2 documents are absent."""
        try:
            migrated = False
            if await self.store.kv.get(keys.CHATS) is None:
                legacy = json_document(self.store, keys.LEGACY_CHATS)
                old = await legacy.load_all()
                if old:
                    await self.chats.replace(decode_chat_lists(old))
                    logger.info("legacy_chats_migrated", users=len(old))
                    migrated = True
            if await self.store.kv.get(keys.GLOBAL_CHAT) is None:
                legacy = json_document(self.store, keys.LEGACY_GLOBAL_CHAT)
                old = await legacy.load_all()
                if old:
                    await self.global_chat.replace(decode_global_chat(old))
                    logger.info("legacy_global_chat_migrated")
                    migrated = True
        except (StorageFailureError, ValueError, TypeError):
            logger.warning("chat_migration_failed", exc_info=True)
            return False
        return migrated

    async def init(self) -> dict[str, Any]:
        await self.migrate_from_v1()
        await self.initialize_global_chat()
        stats = await self.get_stats()
        logger.info("chat_store_ready", **{k: v for k, v in stats.items() if k != "storageKeys"})
        return stats


def _page(messages: list[Any], limit: int, offset: int) -> list[Any]:
    ordered = sorted(messages, key=lambda m: m.timestamp)
    if limit > 0:
        return ordered[offset : offset + limit]
    return ordered[offset:]
