"""Device-side collaborators the data layer calls out to.

The app injects real implementations (GPS, step sensor, push delivery).
The defaults here keep the service usable without them.
"""

from __future__ import annotations

from typing import Protocol

import structlog

logger = structlog.get_logger()


class LocationProvider(Protocol):
    async def get_current_position(self) -> tuple[float, float]: ...


class StepSensor(Protocol):
    async def is_available(self) -> bool: ...

    async def get_step_count(self, start_ms: int, end_ms: int) -> int: ...


class NotificationSink(Protocol):
    async def notify(self, title: str, message: str, kind: str = "info") -> None: ...


class FixedLocation:
    """Reports one configured position."""

    def __init__(self, position: tuple[float, float]) -> None:
        self.position = position

    async def get_current_position(self) -> tuple[float, float]:
        return self.position


class NoStepSensor:
    async def is_available(self) -> bool:
        return False

    async def get_step_count(self, start_ms: int, end_ms: int) -> int:
        return 0


class LogNotifications:
    """Writes notifications to the log instead of delivering them."""

    async def notify(self, title: str, message: str, kind: str = "info") -> None:
        logger.info("notification", title=title, message=message, kind=kind)


async def notify_quietly(sink: NotificationSink | None, title: str, message: str, kind: str = "info") -> None:
    """Fire a notification; delivery failures are logged, never raised."""
    if sink is None:
        return
    try:
        await sink.notify(title, message, kind)
    except Exception:
        logger.warning("notification_failed", title=title, kind=kind, exc_info=True)
