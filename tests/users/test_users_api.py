"""Account, session and verification endpoint tests."""

from __future__ import annotations

from httpx import AsyncClient

PASSWORD = "Secret123"


async def register(client: AsyncClient, nickname: str, **extra) -> dict:
    response = await client.post(
        "/api/v1/users",
        json={"email": f"{nickname.lower()}@example.com", "nickname": nickname, "password": PASSWORD, **extra},
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestRegistration:
    async def test_register_hides_secrets(self, client: AsyncClient):
        data = await register(client, "Alice", phoneNumber="+79991234567")
        user = data["user"]
        assert data["success"] is True
        assert user["email"] == "alice@example.com"
        assert user["phoneNumber"] == "+79991234567"
        assert "password" not in user
        assert data["invite"] is None

    async def test_duplicate_email_conflicts(self, client: AsyncClient):
        await register(client, "Alice")
        response = await client.post(
            "/api/v1/users", json={"email": "ALICE@example.com", "nickname": "Other", "password": PASSWORD}
        )
        assert response.status_code == 409
        assert response.json()["error"] == "duplicate"

    async def test_weak_password(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/users", json={"email": "a@example.com", "nickname": "Alice", "password": "short"}
        )
        assert response.status_code == 422
        assert response.json()["error"] == "weak_password"

    async def test_register_with_referral_invite(self, client: AsyncClient):
        referrer = (await register(client, "Alice"))["user"]
        data = await register(client, "Bobby", invite=referrer["referralCode"])
        assert data["invite"]["action"] == "referral_used"
        assert data["invite"]["bonus"] == 1
        assert data["user"]["referredBy"] == referrer["id"]

    async def test_bad_invite_does_not_fail_registration(self, client: AsyncClient):
        data = await register(client, "Alice", invite="meetup://nowhere/at-all")
        assert data["user"]["nickname"] == "Alice"
        assert data["invite"] == {"success": False, "message": "Invalid invite link", "error": "unrecognized_code"}


class TestSession:
    async def test_login_and_logout(self, client: AsyncClient):
        user = (await register(client, "Alice"))["user"]
        response = await client.post("/api/v1/session", json={"identifier": "alice", "password": PASSWORD})
        assert response.status_code == 200
        assert response.json()["user"]["id"] == user["id"]

        current = await client.get("/api/v1/session")
        assert current.json()["user"]["id"] == user["id"]

        await client.delete("/api/v1/session")
        assert (await client.get("/api/v1/session")).json()["user"] is None

    async def test_wrong_password(self, client: AsyncClient):
        await register(client, "Alice")
        response = await client.post("/api/v1/session", json={"identifier": "alice", "password": "Nope12345"})
        assert response.status_code == 401
        assert response.json()["error"] == "wrong_password"


class TestProfile:
    async def test_patch_and_search(self, client: AsyncClient):
        user = (await register(client, "Alice"))["user"]
        response = await client.patch(f"/api/v1/users/{user['id']}", json={"updates": {"about": "Runner"}})
        assert response.status_code == 200
        assert response.json()["user"]["about"] == "Runner"

        found = await client.get("/api/v1/users", params={"query": "ali"})
        assert found.json()["total"] == 1

    async def test_position_and_activity(self, client: AsyncClient):
        user = (await register(client, "Alice"))["user"]
        response = await client.put(f"/api/v1/users/{user['id']}/position", json={"lat": 55.7, "lng": 37.6})
        assert response.json()["user"]["position"] == [55.7, 37.6]
        activity = (await client.get(f"/api/v1/users/{user['id']}/activity")).json()["result"]
        assert len(activity["movements"]) == 1

    async def test_delete(self, client: AsyncClient):
        user = (await register(client, "Alice"))["user"]
        assert (await client.delete(f"/api/v1/users/{user['id']}")).status_code == 200
        assert (await client.get(f"/api/v1/users/{user['id']}")).status_code == 404


class TestVerification:
    async def test_phone_flow(self, client: AsyncClient):
        user = (await register(client, "Alice"))["user"]
        await client.post(f"/api/v1/users/{user['id']}/phone", json={"phoneNumber": "+79991234567"})

        issued = await client.post(f"/api/v1/users/{user['id']}/verification/phone")
        assert issued.status_code == 200
        code = issued.json()["code"]
        assert len(code) == 4

        confirmed = await client.post(f"/api/v1/users/{user['id']}/verification/phone/confirm", json={"code": code})
        assert confirmed.json()["user"]["phoneVerified"] is True
        assert "phoneVerificationCode" not in confirmed.json()["user"]

    async def test_unknown_channel(self, client: AsyncClient):
        user = (await register(client, "Alice"))["user"]
        response = await client.post(f"/api/v1/users/{user['id']}/verification/email")
        assert response.status_code == 422


class TestSystem:
    async def test_stats_and_backup(self, client: AsyncClient):
        await register(client, "Alice")
        stats = (await client.get("/api/v1/system/stats")).json()["result"]
        assert stats["totalUsers"] == 1

        backup = (await client.post("/api/v1/system/backup")).json()["result"]
        assert backup["users"] == 1
        assert (await client.post("/api/v1/system/restore")).status_code == 200

    async def test_cleanup(self, client: AsyncClient):
        result = (await client.post("/api/v1/system/cleanup")).json()["result"]
        assert set(result) >= {"scheduled_deletions", "friend_requests", "phone_codes"}
