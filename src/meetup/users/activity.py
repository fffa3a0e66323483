"""Per-user activity profile and movement history.

``user_activity_{id}`` holds login bookkeeping; ``user_movements_{id}``
keeps the most recent positions, used to accumulate travelled distance.
"""

from __future__ import annotations

import math
from typing import Any

import structlog

from meetup.clock import Clock
from meetup.storage import keys
from meetup.storage.repository import DocumentStore, json_document

logger = structlog.get_logger()

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: tuple[float, float] | list[float], b: tuple[float, float] | list[float]) -> float:
    """Great-circle distance between two ``[lat, lng]`` points in km."""
    lat1, lon1 = a
    lat2, lon2 = b
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    h = math.sin(d_lat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


class ActivityTracker:
    def __init__(self, store: DocumentStore, clock: Clock, history_size: int = 100) -> None:
        self.store = store
        self.clock = clock
        self.history_size = history_size

    async def create_profile(self, user_id: str) -> dict[str, Any]:
        now = self.clock()
        profile = {
            "userId": user_id,
            "created": now,
            "sessions": [],
            "totalOnlineTime": 0,
            "lastLogin": now,
        }
        await json_document(self.store, keys.activity(user_id)).replace(profile)
        return profile

    async def get_profile(self, user_id: str) -> dict[str, Any]:
        return await json_document(self.store, keys.activity(user_id)).load_all()

    async def record_session(self, user_id: str) -> None:
        """Stamp ``lastActive`` and count one more online tick."""
        now = self.clock()

        def apply(activity: dict[str, Any]) -> None:
            activity["lastActive"] = now
            activity["totalOnlineTime"] = (activity.get("totalOnlineTime") or 0) + 1

        await json_document(self.store, keys.activity(user_id)).mutate(apply)

    async def record_movement(self, user_id: str, position: list[float]) -> float:
        """Append a position; returns km travelled since the previous one."""
        now = self.clock()
        limit = self.history_size

        def apply(movements: list[dict[str, Any]]) -> float:
            movements.append({"position": list(position), "timestamp": now})
            if len(movements) > limit:
                del movements[: len(movements) - limit]
            if len(movements) < 2:
                return 0.0
            previous = movements[-2].get("position")
            if not isinstance(previous, list) or len(previous) != 2:
                return 0.0
            return haversine_km(previous, position)

        return await json_document(self.store, keys.movements(user_id), default=list).mutate(apply)

    async def get_movements(self, user_id: str) -> list[dict[str, Any]]:
        return await json_document(self.store, keys.movements(user_id), default=list).load_all()

    async def purge(self, user_id: str) -> None:
        """Remove every derived per-user document."""
        for key in keys.derived_user_keys(user_id):
            await json_document(self.store, key).remove()
        logger.info("user_documents_purged", user_id=user_id)
