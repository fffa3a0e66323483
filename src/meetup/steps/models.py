"""Step counter record (``meetup_pedometer_stats_v2``)."""

from __future__ import annotations

from typing import Any

from pydantic import Field, field_validator

from meetup.users.models import StoredModel

DEFAULT_GOAL = 10_000
MIN_GOAL = 1_000
MAX_GOAL = 100_000


def clamp_goal(steps: Any) -> int:
    try:
        steps = int(steps)
    except (TypeError, ValueError):
        return DEFAULT_GOAL
    return max(MIN_GOAL, min(MAX_GOAL, steps))


class StepRecord(StoredModel):
    """Day-bucketed step counters.

    ``today`` is the live counter for the day of ``last_update``;
    ``step_history`` maps UTC dates (YYYY-MM-DD) to step counts and always
    includes today's bucket once steps were added. ``week`` and ``month``
    are derived and recomputed on every read and write.
    """

    today: int = 0
    week: int = 0
    month: int = 0
    total_distance: float = 0
    last_update: int = 0
    goal: int = DEFAULT_GOAL
    last_background_update: int = 0
    step_history: dict[str, int] = Field(default_factory=dict)

    @field_validator("goal", mode="before")
    @classmethod
    def clamped_goal(cls, v: Any) -> int:
        return clamp_goal(v)

    @field_validator("step_history", mode="before")
    @classmethod
    def history_or_empty(cls, v: Any) -> dict[str, int]:
        if not isinstance(v, dict):
            return {}
        return {k: int(n) for k, n in v.items() if isinstance(n, (int, float)) and not isinstance(n, bool)}

    @field_validator("today", "week", "month", "last_update", "last_background_update", mode="before")
    @classmethod
    def int_or_zero(cls, v: Any) -> int:
        return int(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else 0


def decode_step_record(raw: Any) -> StepRecord:
    if not isinstance(raw, dict):
        msg = "Step record is not an object"
        raise TypeError(msg)
    return StepRecord.model_validate(raw)


def encode_step_record(record: StepRecord) -> dict[str, Any]:
    return record.to_storage()
