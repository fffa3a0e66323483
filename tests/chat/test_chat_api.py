"""Chat endpoint tests."""

from __future__ import annotations

from httpx import AsyncClient

A = "usr_alice"
B = "usr_bobby"


async def open_chat(client: AsyncClient) -> str:
    response = await client.post("/api/v1/chats", json={"userA": A, "userB": B})
    assert response.status_code == 201, response.text
    return response.json()["chat"]["id"]


class TestPrivateChats:
    async def test_send_list_and_read(self, client: AsyncClient):
        chat_id = await open_chat(client)
        sent = await client.post(f"/api/v1/chats/{chat_id}/messages", json={"senderId": A, "text": "hello"})
        assert sent.status_code == 201
        assert sent.json()["message"]["text"] == "hello"

        listing = (await client.get(f"/api/v1/users/{B}/chats")).json()
        assert listing["unread"] == 1
        assert listing["chats"][0]["lastMessage"]["text"] == "hello"

        read = await client.post(f"/api/v1/chats/{chat_id}/read", json={"userId": B})
        assert read.status_code == 200
        assert (await client.get(f"/api/v1/users/{B}/unread-count")).json()["result"] == {"unread": 0}

    async def test_stranger_cannot_send(self, client: AsyncClient):
        chat_id = await open_chat(client)
        response = await client.post(f"/api/v1/chats/{chat_id}/messages", json={"senderId": "usr_eve", "text": "x"})
        assert response.status_code == 403
        assert response.json()["error"] == "not_a_participant"

    async def test_messages_and_search(self, client: AsyncClient):
        chat_id = await open_chat(client)
        await client.post(f"/api/v1/chats/{chat_id}/messages", json={"senderId": A, "text": "Picnic on Sunday"})
        messages = (await client.get(f"/api/v1/chats/{chat_id}/messages", params={"userId": B})).json()
        assert [m["text"] for m in messages["messages"]] == ["Picnic on Sunday"]

        results = (await client.get(f"/api/v1/users/{B}/messages/search", params={"q": "picnic"})).json()
        assert results["results"][0]["chatId"] == chat_id

    async def test_search_pages(self, client: AsyncClient):
        chat_id = await open_chat(client)
        for text in ("picnic one", "picnic two", "picnic three"):
            await client.post(f"/api/v1/chats/{chat_id}/messages", json={"senderId": A, "text": text})
        url = f"/api/v1/users/{B}/messages/search"

        pages = [
            (await client.get(url, params={"q": "picnic", "limit": 2, "offset": offset})).json()["results"]
            for offset in (0, 2, 4)
        ]

        assert [len(page) for page in pages] == [2, 1, 0]
        texts = [hit["message"]["text"] for page in pages for hit in page]
        assert sorted(texts) == ["picnic one", "picnic three", "picnic two"]
        bad = await client.get(url, params={"q": "picnic", "offset": -1})
        assert bad.status_code == 422

    async def test_delete_for_one_user(self, client: AsyncClient):
        chat_id = await open_chat(client)
        response = await client.delete(f"/api/v1/chats/{chat_id}", params={"userId": A})
        assert response.status_code == 200
        assert (await client.get(f"/api/v1/chats/{chat_id}", params={"userId": A})).status_code == 404
        assert (await client.get(f"/api/v1/chats/{chat_id}", params={"userId": B})).status_code == 200

    async def test_read_unknown_chat(self, client: AsyncClient):
        response = await client.post("/api/v1/chats/chat_missing/read", json={"userId": A})
        assert response.status_code == 404


class TestGlobalChat:
    async def test_global_chat_seeded_on_startup(self, client: AsyncClient):
        chat = (await client.get("/api/v1/chats/global_chat_meetup")).json()["chat"]
        assert chat["isGlobal"] is True
        assert len(chat["messages"]) == 2

    async def test_post_to_global(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/chats/global_chat_meetup/messages", json={"senderId": A, "text": "hi all", "senderName": "Alice"}
        )
        assert response.status_code == 201
        assert response.json()["message"]["senderName"] == "Alice"
        stats = (await client.get("/api/v1/chats/stats")).json()["result"]
        assert stats["globalChatMessages"] == 3
