"""Step statistics endpoint tests."""

from __future__ import annotations

from httpx import AsyncClient


async def register(client: AsyncClient) -> str:
    response = await client.post(
        "/api/v1/users", json={"email": "walker@example.com", "nickname": "Walker", "password": "Secret123"}
    )
    return response.json()["user"]["id"]


class TestStepEndpoints:
    async def test_add_and_read(self, client: AsyncClient):
        user_id = await register(client)
        response = await client.post(f"/api/v1/users/{user_id}/steps", json={"steps": 1500})
        assert response.status_code == 200
        stats = response.json()["stats"]
        assert stats["today"] == 1500
        assert stats["goal"] == 10000

        again = (await client.get(f"/api/v1/users/{user_id}/steps")).json()["stats"]
        assert again["today"] == 1500

    async def test_reading_goal_history_and_reset(self, client: AsyncClient):
        user_id = await register(client)
        reading = await client.post(f"/api/v1/users/{user_id}/steps/reading", json={"total": 300})
        assert reading.json()["result"] == {"added": 300}

        goal = await client.put(f"/api/v1/users/{user_id}/steps/goal", json={"goal": 10})
        assert goal.json()["result"] == {"goal": 1000}

        history = (await client.get(f"/api/v1/users/{user_id}/steps/history", params={"days": 2})).json()["history"]
        assert [h["steps"] for h in history] == [0, 300]

        reset = (await client.delete(f"/api/v1/users/{user_id}/steps")).json()["stats"]
        assert reset["today"] == 0

    async def test_sync_without_sensor(self, client: AsyncClient):
        user_id = await register(client)
        response = await client.post(f"/api/v1/users/{user_id}/steps/sync")
        assert response.status_code == 200
        assert response.json()["result"] == {"added": 0, "available": False}

    async def test_unknown_user(self, client: AsyncClient):
        response = await client.get("/api/v1/users/usr_missing/steps")
        assert response.status_code == 404

    async def test_non_positive_steps(self, client: AsyncClient):
        user_id = await register(client)
        response = await client.post(f"/api/v1/users/{user_id}/steps", json={"steps": 0})
        assert response.status_code == 422
