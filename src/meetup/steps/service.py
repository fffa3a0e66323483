"""Step aggregation with day rollover and sensor ingestion.

The sensor reports cumulative counts; only positive deltas over the
stored ``today`` counter are added, so a reading never lowers or
overwrites the record.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from meetup.clock import DAY_MS, MINUTE_MS, Clock, date_key, parse_date_key, same_day, to_datetime
from meetup.errors import InvalidError, StorageFailureError
from meetup.steps.models import StepRecord, clamp_goal, decode_step_record, encode_step_record
from meetup.storage import keys
from meetup.storage.repository import DocumentStore, Repository

if TYPE_CHECKING:
    from meetup.collaborators import StepSensor
    from meetup.config import Settings

logger = structlog.get_logger()

CALORIES_PER_STEP = 0.04

Observer = Callable[[dict[str, Any]], Any]


def _day_start_ms(day: str) -> int:
    return int(datetime.combine(parse_date_key(day), datetime.min.time(), tzinfo=timezone.utc).timestamp() * 1000)


def start_of_day(now: int) -> int:
    return _day_start_ms(date_key(now))


def roll_over(record: StepRecord, now: int) -> bool:
    """Archive a previous day's ``today`` into history and reset it.

    Returns False when ``record`` is already on ``now``'s day, so a
    second call changes nothing.
    """
    if record.last_update and same_day(record.last_update, now):
        return False
    if record.last_update and record.today > 0:
        previous = date_key(record.last_update)
        record.step_history[previous] = max(record.step_history.get(previous, 0), record.today)
    record.today = 0
    record.last_update = now
    return True


def credit(record: StepRecord, steps: int, now: int, step_length_km: float) -> None:
    """Add ``steps`` to today's counter and history bucket after any rollover."""
    roll_over(record, now)
    today = date_key(now)
    record.today += steps
    record.step_history[today] = record.step_history.get(today, 0) + steps
    record.total_distance += steps * step_length_km
    record.last_update = now
    aggregate(record, now)


def aggregate(record: StepRecord, now: int) -> None:
    """Recompute ``week`` and ``month`` from history plus an unflushed ``today``."""
    week_start = now - 7 * DAY_MS
    month_start = now - 30 * DAY_MS
    week = month = 0
    for day, steps in record.step_history.items():
        try:
            start = _day_start_ms(day)
        except ValueError:
            continue
        if start >= week_start:
            week += steps
        if start >= month_start:
            month += steps
    if not record.step_history.get(date_key(now)):
        week += record.today
        month += record.today
    record.week = week
    record.month = month


class StepAggregator:
    def __init__(
        self,
        store: DocumentStore,
        *,
        settings: Settings,
        clock: Clock,
        sensor: StepSensor | None = None,
        user_id: str | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.sensor = sensor
        self.user_id = user_id
        self.record = Repository(
            store,
            keys.pedometer(user_id),
            decode=decode_step_record,
            encode=encode_step_record,
            default=StepRecord,
        )
        self.tracking = False
        self._observer: Observer | None = None

    # ------------------------------------------------------------------
    # Record
    # ------------------------------------------------------------------

    async def load(self) -> StepRecord:
        """Current record, rolling a finished day into history first."""
        now = self.clock()
        record = await self.record.load_all()
        if record.last_update and same_day(record.last_update, now):
            aggregate(record, now)
            return record

        def rollover(current: StepRecord) -> StepRecord:
            if roll_over(current, now):
                logger.info("steps_rolled_over", user_id=self.user_id, day=date_key(now))
            if not current.last_background_update:
                current.last_background_update = now
            aggregate(current, now)
            return current

        return await self.record.mutate(rollover)

    async def add_steps(self, steps: int) -> StepRecord:
        """Add ``steps`` (> 0) to today's counter and history bucket."""
        if steps <= 0:
            msg = "Step count must be positive"
            raise InvalidError(msg)
        now = self.clock()

        def add(record: StepRecord) -> StepRecord:
            credit(record, steps, now, self.settings.step_length_km)
            return record

        record = await self.record.mutate(add)
        logger.debug("steps_added", user_id=self.user_id, steps=steps, today=record.today)
        await self._emit()
        return record

    async def set_goal(self, steps: int) -> int:
        """Set the daily goal, clamped to [1000, 100000]."""
        goal = clamp_goal(steps)
        now = self.clock()

        def assign(record: StepRecord) -> None:
            roll_over(record, now)
            record.goal = goal
            record.last_update = now

        await self.record.mutate(assign)
        logger.info("step_goal_set", user_id=self.user_id, goal=goal)
        await self._emit()
        return goal

    async def reset(self) -> StepRecord:
        now = self.clock()
        record = StepRecord(last_update=now, last_background_update=now)
        if not await self.record.replace(record):
            msg = "Could not reset step statistics"
            raise StorageFailureError(msg)
        logger.info("steps_reset", user_id=self.user_id)
        await self._emit()
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        record = await self.load()
        return {
            **record.to_storage(),
            "calories": round(record.today * CALORIES_PER_STEP),
            "distanceToday": record.today * self.settings.step_length_km,
            "goalProgress": min(100, record.today / record.goal * 100),
            "isAvailable": await self.is_available(),
            "isTracking": self.tracking,
        }

    async def get_step_history(self, days: int = 7) -> list[dict[str, Any]]:
        """One ``{date, steps}`` entry per day, oldest first, ending today."""
        record = await self.load()
        now = self.clock()
        history = []
        for i in range(days - 1, -1, -1):
            day = date_key(now - i * DAY_MS)
            history.append({"date": day, "steps": record.step_history.get(day, 0)})
        return history

    # ------------------------------------------------------------------
    # Sensor
    # ------------------------------------------------------------------

    async def is_available(self) -> bool:
        if self.sensor is None:
            return False
        try:
            return bool(await self.sensor.is_available())
        except Exception:
            logger.warning("step_sensor_failed", call="is_available", exc_info=True)
            return False

    async def on_sensor_reading(self, total: int) -> int:
        """Live cumulative reading for today; adds the positive delta only.

        The delta is taken against the stored counter under the record's
        lock, so overlapping readings of one total count it once.
        """
        now = self.clock()

        def absorb(record: StepRecord) -> int:
            roll_over(record, now)
            delta = int(total) - record.today
            if delta > 0:
                credit(record, delta, now, self.settings.step_length_km)
            return max(delta, 0)

        delta = await self.record.mutate(absorb)
        if delta:
            logger.debug("steps_added", user_id=self.user_id, steps=delta, source="sensor")
            await self._emit()
        return delta

    async def sync_from_sensor(self) -> int:
        """Pull today's cumulative count from the sensor."""
        if not await self.is_available():
            return 0
        now = self.clock()
        try:
            total = await self.sensor.get_step_count(start_of_day(now), now)  # type: ignore[union-attr]
        except Exception:
            logger.warning("step_sensor_failed", call="get_step_count", exc_info=True)
            return 0
        return await self.on_sensor_reading(total)

    async def start_tracking(self) -> bool:
        if self.tracking or not await self.is_available():
            return False
        await self.sync_from_sensor()
        self.tracking = True
        logger.info("step_tracking_started", user_id=self.user_id)
        return True

    def stop_tracking(self) -> None:
        if self.tracking:
            logger.info("step_tracking_stopped", user_id=self.user_id)
        self.tracking = False

    async def background_sync(self) -> int:
        """Add steps counted since the last background run, at most every few minutes."""
        if not await self.is_available():
            return 0
        now = self.clock()
        record = await self.load()
        since = record.last_background_update
        if now - since <= self.settings.background_sync_interval_minutes * MINUTE_MS:
            return 0

        try:
            steps = await self.sensor.get_step_count(since, now)  # type: ignore[union-attr]
        except Exception:
            logger.warning("step_sensor_failed", call="get_step_count", exc_info=True)
            return 0
        steps = max(int(steps), 0)

        def stamp(current: StepRecord) -> int:
            # Another sync already covered this window.
            if current.last_background_update != since:
                return 0
            if steps:
                credit(current, steps, now, self.settings.step_length_km)
            current.last_background_update = now
            return steps

        added = await self.record.mutate(stamp)
        logger.info("steps_background_sync", user_id=self.user_id, steps=added, since=to_datetime(since).isoformat())
        if added:
            await self._emit()
        return added

    # ------------------------------------------------------------------
    # Observer
    # ------------------------------------------------------------------

    def on_update(self, callback: Observer | None) -> None:
        """Register the callback that receives ``get_stats()`` after each change."""
        self._observer = callback

    async def _emit(self) -> None:
        if self._observer is None:
            return
        try:
            result = self._observer(await self.get_stats())
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("step_observer_failed", user_id=self.user_id, exc_info=True)
