"""Background sweeper."""

import pytest

from conftest import wait_until
from core.cleanup import CleanupService


@pytest.fixture
async def sweeper(cache, settings):
    service = CleanupService(cache, settings)
    yield service
    await service.stop()


async def test_run_once_records_stats(cache, clock, sweeper):
    for i in range(4):
        await cache.set(f"k{i}", i, 5)
    await cache.set("live", 1, 500)
    clock.advance(10)

    result = await sweeper.run_once()

    assert result["cleaned_count"] == 4
    assert result["duration_ms"] >= 0

    stats = sweeper.get_stats()
    assert stats["total_runs"] == 1
    assert stats["total_cleaned"] == 4
    assert stats["last_cleaned_count"] == 4
    assert stats["last_run"] is not None
    assert stats["is_running"] is False
    assert stats["next_run_at"] is None
    assert await cache.list_keys() == ["live"]


async def test_average_cleaned(cache, clock, sweeper):
    await cache.set("a", 1, 1)
    await cache.set("b", 2, 1)
    clock.advance(2)

    await sweeper.run_once()
    await sweeper.run_once()

    stats = sweeper.get_stats()
    assert stats["total_runs"] == 2
    assert stats["total_cleaned"] == 2
    assert stats["last_cleaned_count"] == 0
    assert stats["average_cleaned"] == 1


async def test_start_runs_immediately_and_stop(cache, clock, sweeper, settings):
    await cache.set("k", 1, 1)
    clock.advance(2)

    await sweeper.start()
    assert sweeper.is_running
    await wait_until(lambda: sweeper.total_runs >= 1)

    assert await cache.list_keys() == []
    assert sweeper.get_stats()["next_run_at"] is not None
    assert sweeper.get_stats()["interval"] == settings.cache_sweep_interval

    await sweeper.stop()
    assert not sweeper.is_running
    assert sweeper.get_stats()["next_run_at"] is None


async def test_start_twice_keeps_one_loop(sweeper):
    await sweeper.start()
    task = sweeper._task
    await sweeper.start()
    assert sweeper._task is task


async def test_loop_survives_failing_sweeps(cache, sweeper, monkeypatch):
    attempts = 0

    async def failing_sweep():
        nonlocal attempts
        attempts += 1
        raise RuntimeError("disk full")

    monkeypatch.setattr(cache, "sweep_expired", failing_sweep)
    sweeper.interval = 0.01

    await sweeper.start()
    await wait_until(lambda: attempts >= 3)

    assert sweeper.is_running
    assert sweeper.total_runs == 0


async def test_storage_outage_sweeps_nothing(cache, database, sweeper):
    await database.shutdown()
    assert (await sweeper.run_once())["cleaned_count"] == 0
