"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from meetup.config import Settings
from meetup.container import Container
from meetup.main import create_app
from meetup.storage.kv import MemoryKeyValueStore
from meetup.users.models import Account, NewAccount

START = int(datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc).timestamp() * 1000)

PASSWORD = "Secret123"


class FakeClock:
    """Controllable epoch-ms clock."""

    def __init__(self, now: int = START) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        seed_beta_accounts=False,
        backup_on_save=False,
        log_format="console",
        debug=True,
    )


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest_asyncio.fixture
async def container(kv: MemoryKeyValueStore, settings: Settings, clock: FakeClock) -> AsyncGenerator[Container, None]:
    """Services over an in-memory store, not started."""
    c = Container(kv, settings, clock=clock)
    yield c
    await c.shutdown()


@pytest.fixture
def make_user(container: Container) -> Callable[..., Awaitable[Account]]:
    """Register an account with a valid password; extra fields go to NewAccount."""

    async def _make(nickname: str, email: str | None = None, **fields: object) -> Account:
        return await container.directory.register(
            NewAccount(
                email=email or f"{nickname.lower()}@example.com",
                nickname=nickname,
                password=PASSWORD,
                **fields,
            )
        )

    return _make


@pytest_asyncio.fixture
async def client(container: Container) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client over the app, with the container started by hand (no lifespan under ASGITransport)."""
    app = create_app(container)
    await container.startup()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
