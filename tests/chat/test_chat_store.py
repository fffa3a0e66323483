"""Private chat tests: fan-out, unread counters, search and migration."""

from __future__ import annotations

import json

import pytest

from meetup.errors import InvalidError, NotAParticipantError, NotFoundError
from meetup.storage import keys

A = "usr_alice"
B = "usr_bobby"
C = "usr_carol"


def copies(kv, chat_id: str) -> list[dict]:
    """Every stored copy of one chat."""
    lists = json.loads(kv.dump()[keys.CHATS])
    return [chat for chats in lists.values() for chat in chats if chat["id"] == chat_id]


class TestCreateChat:
    async def test_created_in_both_lists(self, container, kv):
        chat = await container.chats.create_chat(A, B)
        assert chat.participants == [A, B]
        assert chat.name == f"Chat {A[:8]} & {B[:8]}"
        assert chat.unread_by == {A: 0, B: 0}
        assert len(copies(kv, chat.id)) == 2
        index = json.loads(kv.dump()[keys.CHAT_INDEX])
        assert index[chat.id]["participants"] == [A, B]

    async def test_idempotent_in_either_order(self, container):
        first = await container.chats.create_chat(A, B)
        second = await container.chats.create_chat(B, A)
        assert first.id == second.id
        assert len(await container.chats.get_user_chats(A)) == 1

    async def test_recreate_after_delete_reuses_chat(self, container, kv):
        chat = await container.chats.create_chat(A, B)
        await container.chats.delete_chat_for_user(chat.id, A)

        again = await container.chats.create_chat(A, B)

        assert again.id == chat.id
        assert [c.id for c in await container.chats.get_user_chats(A)] == [chat.id]
        assert [c.id for c in await container.chats.get_user_chats(B)] == [chat.id]
        assert len(copies(kv, chat.id)) == 2

    @pytest.mark.parametrize(("a", "b"), [(A, A), ("", B), (A, "  ")])
    async def test_invalid_pairs(self, container, a, b):
        with pytest.raises(InvalidError):
            await container.chats.create_chat(a, b)

    async def test_find_chat(self, container):
        chat = await container.chats.create_chat(A, B, name="Hiking")
        found = await container.chats.find_chat(B, A)
        assert found is not None and found.id == chat.id and found.name == "Hiking"
        assert await container.chats.find_chat(A, C) is None


class TestMessages:
    async def test_unread_then_read(self, container, kv, clock):
        chat = await container.chats.create_chat(A, B)
        clock.advance(1000)
        await container.chats.send_message(chat.id, A, "hi")

        assert await container.chats.get_unread_count(B) == 1
        assert await container.chats.get_unread_count(A) == 0

        assert await container.chats.mark_as_read(chat.id, B) is True

        assert await container.chats.get_unread_count(B) == 0
        stored = copies(kv, chat.id)
        assert len(stored) == 2
        assert stored[0] == stored[1]
        assert stored[0]["unreadCount"] == 0
        assert stored[0]["messages"][0]["read"] is True
        assert stored[0]["messages"][0]["readAt"] == clock()

    async def test_copies_stay_identical(self, container, kv, clock):
        chat = await container.chats.create_chat(A, B)
        for sender, text in ((A, "one"), (B, "two"), (A, "three")):
            clock.advance(1000)
            await container.chats.send_message(chat.id, sender, text)
        stored = copies(kv, chat.id)
        assert stored[0] == stored[1]
        assert [m["text"] for m in stored[0]["messages"]] == ["one", "two", "three"]
        assert stored[0]["unreadBy"] == {A: 1, B: 2}
        assert stored[0]["unreadCount"] == 3
        assert stored[0]["lastMessageAt"] == clock()

    async def test_sender_must_participate(self, container):
        chat = await container.chats.create_chat(A, B)
        with pytest.raises(NotAParticipantError):
            await container.chats.send_message(chat.id, C, "let me in")

    async def test_unknown_chat(self, container):
        with pytest.raises(NotFoundError):
            await container.chats.send_message("chat_missing", A, "hello")

    async def test_blank_text(self, container):
        chat = await container.chats.create_chat(A, B)
        with pytest.raises(InvalidError):
            await container.chats.send_message(chat.id, A, "   ")

    async def test_message_restores_deleted_copy(self, container):
        chat = await container.chats.create_chat(A, B)
        assert await container.chats.delete_chat_for_user(chat.id, A) is True
        assert await container.chats.get_user_chats(A) == []
        assert len(await container.chats.get_user_chats(B)) == 1

        await container.chats.send_message(chat.id, B, "are you there?")
        restored = await container.chats.get_user_chats(A)
        assert [c.id for c in restored] == [chat.id]
        assert restored[0].unread_for(A) == 1

    async def test_mark_read_for_stranger(self, container):
        chat = await container.chats.create_chat(A, B)
        assert await container.chats.mark_as_read(chat.id, C) is False
        assert await container.chats.delete_chat_for_user(chat.id, C) is False

    async def test_chats_sorted_by_activity(self, container, clock):
        older = await container.chats.create_chat(A, B)
        clock.advance(1000)
        newer = await container.chats.create_chat(A, C)
        assert [c.id for c in await container.chats.get_user_chats(A)] == [newer.id, older.id]
        clock.advance(1000)
        await container.chats.send_message(older.id, B, "bump")
        assert [c.id for c in await container.chats.get_user_chats(A)] == [older.id, newer.id]

    async def test_paging_and_access(self, container, clock):
        chat = await container.chats.create_chat(A, B)
        for n in range(5):
            clock.advance(1000)
            await container.chats.send_message(chat.id, A, f"m{n}")
        page = await container.chats.get_messages(chat.id, B, limit=2, offset=1)
        assert [m.text for m in page] == ["m1", "m2"]
        everything = await container.chats.get_messages(chat.id, limit=0)
        assert len(everything) == 5
        with pytest.raises(NotAParticipantError):
            await container.chats.get_messages(chat.id, C)
        assert await container.chats.get_messages("chat_missing") == []

    async def test_last_message_preview(self, container):
        chat = await container.chats.create_chat(A, B)
        assert container.chats.get_last_message(chat)["isEmpty"] is True
        await container.chats.send_message(chat.id, A, "hey")
        chat = await container.chats.get_chat_by_id(chat.id, A)
        assert container.chats.get_last_message(chat)["text"] == "hey"
        chat.messages[-1].deleted = True
        assert container.chats.get_last_message(chat) == {
            "text": "Message deleted",
            "timestamp": chat.messages[-1].timestamp,
            "isDeleted": True,
        }


class TestLegacyUnread:
    async def test_chats_without_counters(self, container, kv):
        legacy = {
            "id": "chat_legacy",
            "participants": [A, B],
            "createdAt": 1,
            "unreadCount": 2,
            "messages": [
                {"id": "m1", "senderId": B, "text": "one", "timestamp": 2, "read": False},
                {"id": "m2", "senderId": B, "text": "two", "timestamp": 3, "read": False},
            ],
        }
        await kv.set(keys.CHATS, json.dumps({A: [legacy], B: [legacy]}))

        assert await container.chats.get_unread_count(A) == 2
        assert await container.chats.get_unread_count(B) == 0

        await container.chats.send_message("chat_legacy", A, "three")
        chat = await container.chats.get_chat_by_id("chat_legacy", B)
        assert chat.unread_by == {A: 2, B: 1}
        assert chat.unread_count == 3


class TestSearch:
    async def test_newest_first_case_insensitive(self, container, clock):
        ab = await container.chats.create_chat(A, B, name="Hikes")
        ac = await container.chats.create_chat(A, C)
        clock.advance(1000)
        await container.chats.send_message(ab.id, B, "Trail at noon?")
        clock.advance(1000)
        await container.chats.send_message(ac.id, C, "no TRAIL today")
        clock.advance(1000)
        await container.chats.send_message(ab.id, A, "sounds good")

        hits = await container.chats.search_messages(A, "trail")
        assert [h.message.text for h in hits] == ["no TRAIL today", "Trail at noon?"]
        assert hits[1].chat_name == "Hikes"
        assert len(await container.chats.search_messages(A, "trail", limit=1)) == 1
        second_page = await container.chats.search_messages(A, "trail", limit=1, offset=1)
        assert [h.message.text for h in second_page] == ["Trail at noon?"]
        assert await container.chats.search_messages(A, "trail", offset=2) == []
        assert await container.chats.search_messages(A, "t") == []
        assert await container.chats.search_messages(B, "today") == []


class TestHousekeeping:
    async def test_drop_user(self, container):
        chat = await container.chats.create_chat(A, B)
        assert await container.chats.drop_user(A) is True
        assert await container.chats.get_user_chats(A) == []
        assert [c.id for c in await container.chats.get_user_chats(B)] == [chat.id]
        assert await container.chats.drop_user(A) is False

    async def test_stats(self, container):
        chat = await container.chats.create_chat(A, B)
        await container.chats.send_message(chat.id, A, "hi")
        await container.chats.initialize_global_chat()
        stats = await container.chats.get_stats()
        assert stats["totalUsers"] == 2
        assert stats["totalPrivateChats"] == 2
        assert stats["globalChatMessages"] == 2
        assert stats["totalMessages"] == 4
        assert keys.CHATS in stats["storageKeys"]

    async def test_migrate_from_v1(self, container, kv):
        legacy_chat = {"id": "chat_old", "participants": [A, B], "messages": []}
        await kv.set(keys.LEGACY_CHATS, json.dumps({A: [legacy_chat], B: [legacy_chat]}))
        await kv.set(keys.LEGACY_GLOBAL_CHAT, json.dumps({"id": "global_chat_meetup", "messages": []}))

        assert await container.chats.migrate_from_v1() is True
        assert [c.id for c in await container.chats.get_user_chats(B)] == ["chat_old"]
        assert (await container.chats.get_global_chat()).messages == []
        assert await container.chats.migrate_from_v1() is False

    async def test_migration_leaves_v2_alone(self, container, kv):
        await container.chats.create_chat(A, B)
        await kv.set(keys.LEGACY_CHATS, json.dumps({C: [{"id": "chat_old", "participants": [A, C]}]}))
        await container.chats.migrate_from_v1()
        assert await container.chats.get_user_chats(C) == []
