"""arq worker running the directory sweep and snapshots.

Runs as a separate process against the Redis storage backend:
``arq meetup.workers.settings.WorkerSettings``.
"""

from __future__ import annotations

import structlog
from arq import cron
from arq.connections import RedisSettings

from meetup.config import get_settings
from meetup.container import Container
from meetup.middleware.logging import setup_logging
from meetup.redis_client import close_redis, init_redis
from meetup.storage.kv import RedisKeyValueStore

logger = structlog.get_logger()


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Build a container over the shared Redis store."""
    settings = get_settings()
    setup_logging(settings)
    redis = await init_redis(settings.redis_url)
    ctx["container"] = Container(RedisKeyValueStore(redis, settings.redis_key_prefix), settings)
    logger.info("maintenance_worker_started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    container: Container | None = ctx.get("container")
    if container is not None:
        await container.shutdown()
    await close_redis()
    logger.info("maintenance_worker_stopped")


def _fresh(ctx: dict) -> Container:  # type: ignore[type-arg]
    """The worker's container with its cache dropped; the API process writes the same keys."""
    container: Container = ctx["container"]
    container.store.clear_cache()
    return container


async def run_cleanup(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Hourly sweep: deletions, stale requests, expired codes and QR records."""
    return await _fresh(ctx).maintenance.cleanup()


async def run_backup(ctx: dict) -> int:  # type: ignore[type-arg]
    """Daily snapshot of accounts and friend requests."""
    snapshot = await _fresh(ctx).maintenance.backup()
    return len(snapshot["users"])


async def run_migration(ctx: dict) -> int:  # type: ignore[type-arg]
    return await _fresh(ctx).maintenance.migrate()


class WorkerSettings:
    """arq worker settings for maintenance jobs."""

    functions = [run_cleanup, run_backup, run_migration]
    cron_jobs = [
        cron(run_cleanup, minute=0, run_at_startup=True),
        cron(run_backup, hour=3, minute=30),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 2
    job_timeout = get_settings().maintenance_job_timeout_seconds
