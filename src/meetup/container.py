"""Service container: one DocumentStore and one instance of each service per process."""

from __future__ import annotations

from typing import Any

import structlog

from meetup.chat.service import ChatStore
from meetup.clock import Clock, system_clock
from meetup.collaborators import (
    FixedLocation,
    LocationProvider,
    LogNotifications,
    NoStepSensor,
    NotificationSink,
    StepSensor,
)
from meetup.config import Settings
from meetup.social.friends import FriendGraph
from meetup.social.qr import QrRegistry
from meetup.social.referrals import InviteService
from meetup.steps.service import StepAggregator
from meetup.storage.kv import KeyValueStore
from meetup.storage.repository import DocumentStore
from meetup.tasks import TaskQueue
from meetup.users.activity import ActivityTracker
from meetup.users.maintenance import Maintenance
from meetup.users.service import UserDirectory
from meetup.users.verification import VerificationService

logger = structlog.get_logger()


class Container:
    """Wires the data layer over one key-value store.

    Collaborators default to the log-only and fixed-position stand-ins;
    hosts with real devices pass their own.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        settings: Settings,
        *,
        clock: Clock = system_clock,
        location: LocationProvider | None = None,
        sensor: StepSensor | None = None,
        notifications: NotificationSink | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.sensor = sensor or NoStepSensor()
        self.notifications = notifications or LogNotifications()
        self.store = DocumentStore(kv)
        self.tasks = TaskQueue()

        self.activity = ActivityTracker(self.store, clock, settings.movement_history_size)
        self.directory = UserDirectory(
            self.store,
            settings=settings,
            clock=clock,
            location=location or FixedLocation(settings.default_position),
            activity=self.activity,
            on_users_saved=self._users_saved if settings.backup_on_save else None,
        )
        self.verification = VerificationService(self.directory, self.store, settings=settings, clock=clock)
        self.friends = FriendGraph(
            self.directory, settings=settings, clock=clock, notifications=self.notifications
        )
        self.qr = QrRegistry(self.store, clock, settings.qr_ttl_hours)
        self.invites = InviteService(
            self.directory, self.friends, self.qr, self.tasks, settings=settings, clock=clock
        )
        self.maintenance = Maintenance(
            self.directory, self.friends, self.qr, self.store, settings=settings, clock=clock
        )
        self.chats = ChatStore(self.store, settings=settings, clock=clock)
        self.steps = StepAggregator(self.store, settings=settings, clock=clock, sensor=self.sensor)
        self._step_aggregators: dict[str, StepAggregator] = {}

    async def _users_saved(self, users: Any) -> None:
        await self.maintenance.snapshot_on_save(users)

    def steps_for(self, user_id: str) -> StepAggregator:
        """Step aggregator over one account's record."""
        aggregator = self._step_aggregators.get(user_id)
        if aggregator is None:
            aggregator = StepAggregator(
                self.store, settings=self.settings, clock=self.clock, sensor=self.sensor, user_id=user_id
            )
            self._step_aggregators[user_id] = aggregator
        return aggregator

    async def delete_account(self, user_id: str) -> None:
        """Hard delete with cascade, including the account's own chat list."""
        await self.directory.delete(user_id)
        aggregator = self._step_aggregators.pop(user_id, None)
        if aggregator is not None:
            aggregator.stop_tracking()
        await self.chats.drop_user(user_id)

    async def startup(self) -> dict[str, Any]:
        """Initialize the directory and chats, then start the task queue."""
        summary = await self.maintenance.initialize()
        summary["chats"] = await self.chats.init()
        self.tasks.start()
        logger.info("container_started")
        return summary

    async def shutdown(self) -> None:
        await self.tasks.stop()
        for aggregator in (self.steps, *self._step_aggregators.values()):
            aggregator.stop_tracking()
        logger.info("container_stopped")
