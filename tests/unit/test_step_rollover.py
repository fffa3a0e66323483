"""Day rollover and week/month aggregation on step records."""

from datetime import datetime, timezone

from meetup.clock import DAY_MS, HOUR_MS, date_key
from meetup.steps.models import DEFAULT_GOAL, MAX_GOAL, MIN_GOAL, StepRecord, clamp_goal, decode_step_record
from meetup.steps.service import aggregate, roll_over, start_of_day

DAY = int(datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc).timestamp() * 1000)


class TestRollOver:
    def test_same_day_is_noop(self):
        record = StepRecord(today=300, last_update=DAY, step_history={date_key(DAY): 300})
        assert roll_over(record, DAY + HOUR_MS) is False
        assert record.today == 300

    def test_next_day_archives_and_resets(self):
        record = StepRecord(today=500, last_update=DAY)
        assert roll_over(record, DAY + DAY_MS) is True
        assert record.step_history[date_key(DAY)] == 500
        assert record.today == 0
        assert record.last_update == DAY + DAY_MS

    def test_archive_keeps_larger_of_bucket_and_today(self):
        record = StepRecord(today=200, last_update=DAY, step_history={date_key(DAY): 700})
        roll_over(record, DAY + DAY_MS)
        assert record.step_history[date_key(DAY)] == 700

    def test_second_rollover_changes_nothing(self):
        record = StepRecord(today=500, last_update=DAY)
        now = DAY + 2 * DAY_MS
        roll_over(record, now)
        snapshot = record.to_storage()
        assert roll_over(record, now) is False
        assert record.to_storage() == snapshot

    def test_fresh_record_has_no_history(self):
        record = StepRecord()
        roll_over(record, DAY)
        assert record.step_history == {}
        assert record.last_update == DAY


class TestAggregate:
    def test_week_and_month_windows(self):
        record = StepRecord(
            step_history={
                date_key(DAY): 100,
                date_key(DAY - 3 * DAY_MS): 200,
                date_key(DAY - 10 * DAY_MS): 400,
                date_key(DAY - 40 * DAY_MS): 800,
            },
            today=100,
            last_update=DAY,
        )
        aggregate(record, DAY)
        assert record.week == 300
        assert record.month == 700

    def test_unflushed_today_is_counted(self):
        record = StepRecord(today=250, last_update=DAY)
        aggregate(record, DAY)
        assert record.week == 250
        assert record.month == 250

    def test_malformed_history_keys_skipped(self):
        record = StepRecord(step_history={"yesterday": 50, date_key(DAY): 10}, today=10, last_update=DAY)
        aggregate(record, DAY)
        assert record.week == 10


def test_start_of_day_is_utc_midnight():
    assert start_of_day(DAY) == int(datetime(2026, 3, 10, tzinfo=timezone.utc).timestamp() * 1000)


class TestGoal:
    def test_clamped(self):
        assert clamp_goal(10) == MIN_GOAL
        assert clamp_goal(10**9) == MAX_GOAL
        assert clamp_goal("abc") == DEFAULT_GOAL
        assert clamp_goal(12_345) == 12_345

    def test_stored_goal_is_clamped_on_read(self):
        record = decode_step_record({"goal": 5, "stepHistory": {"2026-03-09": 10, "bad": "x"}, "today": "oops"})
        assert record.goal == MIN_GOAL
        assert record.step_history == {"2026-03-09": 10}
        assert record.today == 0
