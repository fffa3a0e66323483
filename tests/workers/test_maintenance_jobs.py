"""Tests for the arq maintenance jobs."""

from __future__ import annotations

import json

from meetup.clock import DAY_MS
from meetup.storage import keys
from meetup.workers.maintenance import WorkerSettings, run_backup, run_cleanup, run_migration


class TestJobs:
    """Jobs run against the worker's container."""

    async def test_cleanup_job(self, container, clock, make_user) -> None:
        user = await make_user("Alice")
        await container.directory.schedule_deletion(user.id, delay_ms=DAY_MS)
        clock.advance(DAY_MS)

        result = await run_cleanup({"container": container})

        assert result["scheduled_deletions"] == 1
        assert await container.directory.all() == []

    async def test_jobs_see_writes_from_other_processes(self, container, kv, make_user) -> None:
        """The cache is dropped before each job, so records written elsewhere are picked up."""
        await make_user("Alice")
        stored = json.loads(kv.dump()[keys.USERS])
        stored.append({"id": "usr_elsewhere", "email": "else@example.com", "nickname": "Elsewhere"})
        await kv.set(keys.USERS, json.dumps(stored))

        assert await run_backup({"container": container}) == 2
        assert await run_migration({"container": container}) == 1


class TestWorkerSettings:
    def test_schedule(self) -> None:
        assert run_cleanup in WorkerSettings.functions
        assert len(WorkerSettings.cron_jobs) == 2
        assert WorkerSettings.max_jobs == 2
