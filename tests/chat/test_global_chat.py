"""Global chat tests: seeding, bounded history and routing by chat id."""

from __future__ import annotations

import pytest

from meetup.chat.models import GLOBAL_CHAT_ID, GlobalChat
from meetup.errors import InvalidError


class TestSeeding:
    async def test_seeded_with_welcome_messages(self, container, clock):
        chat = await container.chats.get_global_chat()
        assert chat.id == GLOBAL_CHAT_ID
        assert [m.id for m in chat.messages] == ["welcome_message_1", "welcome_message_2"]
        assert chat.messages[1].timestamp == clock() + 1000
        assert all(m.is_welcome and m.sender_id == "system" for m in chat.messages)
        assert chat.total_messages == 2
        assert chat.cannot_be_deleted is True

    async def test_initialize_is_idempotent(self, container, clock):
        first = await container.chats.initialize_global_chat()
        clock.advance(5000)
        second = await container.chats.initialize_global_chat()
        assert second.created_at == first.created_at
        assert len(second.messages) == 2


class TestSending:
    async def test_default_sender_name(self, container):
        message = await container.chats.send_to_global("usr_abcdefghijk", "hello all")
        assert message.id.startswith("global_msg_")
        assert message.sender_name == "User usr_abcd"
        chat = await container.chats.get_global_chat()
        assert chat.messages[-1].id == message.id
        assert chat.total_messages == 3

    async def test_length_limit(self, container):
        limit = container.settings.global_chat_max_message_length
        await container.chats.send_to_global("usr_a", "x" * limit)
        with pytest.raises(InvalidError):
            await container.chats.send_to_global("usr_a", "x" * (limit + 1))

    async def test_blank_rejected(self, container):
        with pytest.raises(InvalidError):
            await container.chats.send_to_global("usr_a", "  ")

    async def test_oldest_evicted_past_cap(self, container, clock):
        container.settings.global_chat_max_messages = 50
        for n in range(60):
            clock.advance(1)
            await container.chats.send_to_global("usr_a", f"message {n}", "Alice")

        chat = await container.chats.get_global_chat()
        assert len(chat.messages) == 50
        assert [m.text for m in chat.messages] == [f"message {n}" for n in range(10, 60)]
        assert chat.total_messages == 62

    def test_default_cap(self, settings):
        assert settings.global_chat_max_messages == 1000


class TestRouting:
    async def test_send_to_chat_by_global_id(self, container):
        message = await container.chats.send_to_chat(GLOBAL_CHAT_ID, "usr_a", "hi", "Alice")
        assert message.sender_name == "Alice"
        fetched = await container.chats.get_chat_by_id(GLOBAL_CHAT_ID)
        assert isinstance(fetched, GlobalChat)
        assert fetched.messages[-1].id == message.id

    async def test_global_messages_page(self, container, clock):
        for n in range(3):
            clock.advance(10_000)
            await container.chats.send_to_global("usr_a", f"m{n}")
        page = await container.chats.get_messages(GLOBAL_CHAT_ID, limit=2, offset=3)
        assert [m.text for m in page] == ["m1", "m2"]
