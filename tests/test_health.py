"""Health check helpers."""

from core.health import check_cache, check_database, get_health_status, get_uptime, set_startup_time


async def test_check_database(database):
    assert await check_database(database) is True

    await database.shutdown()
    assert await check_database(database) is False


async def test_check_cache_leaves_nothing_behind(cache):
    operations = await check_cache(cache)

    assert operations == {"set": True, "get": True, "value_integrity": True, "delete": True}
    assert await cache.list_keys() == []


async def test_health_status(database, cache, settings):
    set_startup_time()

    health = await get_health_status(database, cache, settings)

    assert health["status"] == "healthy"
    assert health["checks"] == {"database": True, "cache": True}
    assert health["features"] == {"redis_lease": False, "sweeper": False}
    assert get_uptime() >= 0


async def test_health_status_degraded_without_database(database, cache, settings):
    await database.shutdown()

    health = await get_health_status(database, cache, settings)

    assert health["status"] == "degraded"
    assert health["checks"]["database"] is False
