"""Shared fixtures: a temporary SQLite store and a controllable clock."""

import asyncio

import pytest

from core.cache import CacheService
from core.config import Settings
from core.database import Database


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}",
        cache_sweep_enabled=False,
        redis_enabled=False,
        cache_lease_wait=1.0,
        cache_lease_poll_interval=0.01,
        log_format="console",
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
async def cache(settings, database, clock):
    service = CacheService(settings, database, clock=clock)
    await service.startup()
    yield service
    await service.shutdown()
