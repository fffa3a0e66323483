"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from meetup.chat.router import router as chat_router
from meetup.config import Settings, get_settings
from meetup.container import Container
from meetup.health.router import router as health_router
from meetup.middleware import setup_middleware
from meetup.redis_client import close_redis, init_redis
from meetup.social.router import router as social_router
from meetup.steps.router import router as steps_router
from meetup.storage.kv import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from meetup.users.router import router as users_router

logger = structlog.get_logger()


async def open_store(settings: Settings) -> KeyValueStore:
    """Key-value backend selected by ``storage_backend``."""
    if settings.storage_backend == "redis":
        redis = await init_redis(settings.redis_url)
        return RedisKeyValueStore(redis, settings.redis_key_prefix)
    if settings.storage_backend != "memory":
        msg = f"Unknown storage backend: {settings.storage_backend}"
        raise ValueError(msg)
    logger.warning("memory_storage_backend", detail="state is lost on restart")
    return MemoryKeyValueStore()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    owned = getattr(app.state, "container", None) is None
    if owned:
        kv = await open_store(settings)
        app.state.container = Container(kv, settings)
    container: Container = app.state.container
    await container.startup()

    yield

    await container.shutdown()
    if owned:
        await close_redis()


def create_app(container: Container | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    A prebuilt ``container`` is used as-is; otherwise the lifespan opens
    the configured store and builds one.
    """
    settings = container.settings if container is not None else get_settings()

    app = FastAPI(
        title="MeetUP API",
        description="Accounts, friends, invites, chats and step statistics for MeetUP",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(users_router)
    app.include_router(social_router)
    app.include_router(chat_router)
    app.include_router(steps_router)

    return app


app = create_app()
