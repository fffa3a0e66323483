"""Process-wide Redis pool behind the ``redis`` storage backend."""

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from meetup.errors import StorageFailureError

logger = structlog.get_logger()

_pool: redis.Redis | None = None


async def init_redis(url: str, max_connections: int = 20) -> redis.Redis:
    """Open the pool and ping it once so a bad URL fails at startup, not on the first save."""
    global _pool  # noqa: PLW0603
    client = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
    )
    try:
        await client.ping()
    except RedisError as e:
        await client.aclose()
        msg = f"Redis at {url} is unreachable: {e}"
        raise StorageFailureError(msg) from e
    _pool = client
    logger.info("redis_connected", max_connections=max_connections)
    return _pool


async def close_redis() -> None:
    global _pool  # noqa: PLW0603
    if _pool is not None:
        await _pool.aclose()
        _pool = None
        logger.info("redis_closed")
