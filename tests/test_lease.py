"""Redis population lease and cross-instance get_or_set."""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import wait_until
from core.cache import CacheService
from core.lease import RedisLease, create_lease


class FakeRedis:
    """In-memory stand-in for the few redis.asyncio calls the lease makes."""

    def __init__(self):
        self.store = {}
        self.expiry = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def ping(self):
        self._check()
        return True

    async def set(self, name, value, ex=None, nx=False):
        self._check()
        if nx and name in self.store:
            return None
        self.store[name] = value
        self.expiry[name] = ex
        return True

    async def get(self, name):
        self._check()
        return self.store.get(name)

    async def delete(self, *names):
        self._check()
        removed = 0
        for name in names:
            if self.store.pop(name, None) is not None:
                removed += 1
        return removed

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def lease_settings(settings):
    return settings.model_copy(update={"redis_enabled": True})


@pytest.fixture
async def lease(lease_settings, fake_redis):
    lease = RedisLease(lease_settings, client=fake_redis)
    await lease.startup()
    yield lease
    await lease.shutdown()


# ============================================================================
# RedisLease
# ============================================================================

async def test_acquire_is_exclusive(lease, fake_redis, lease_settings):
    token = await lease.acquire("report:q3")

    assert token is not None
    assert fake_redis.store["lock:cache:report:q3"] == token
    assert fake_redis.expiry["lock:cache:report:q3"] == lease_settings.cache_lease_ttl
    assert await lease.acquire("report:q3") is None


async def test_release_requires_matching_token(lease, fake_redis):
    token = await lease.acquire("k")

    assert await lease.release("k", "someone-else") is False
    assert "lock:cache:k" in fake_redis.store

    assert await lease.release("k", token) is True
    assert "lock:cache:k" not in fake_redis.store
    assert await lease.acquire("k") is not None


async def test_redis_errors_mean_no_lease(lease, fake_redis):
    token = await lease.acquire("k")
    fake_redis.fail = True

    assert await lease.acquire("other") is None
    assert await lease.release("k", token) is False


async def test_shutdown_closes_client(lease_settings, fake_redis):
    lease = RedisLease(lease_settings, client=fake_redis)
    assert lease.available

    await lease.shutdown()

    assert fake_redis.closed
    assert not lease.available
    assert await lease.acquire("k") is None


async def test_startup_without_url_disables_lease(lease_settings):
    lease = RedisLease(lease_settings)
    await lease.startup()
    assert not lease.available


async def test_startup_with_unreachable_redis_disables_lease(lease_settings):
    settings = lease_settings.model_copy(update={"redis_url": "redis://127.0.0.1:1/0"})
    lease = RedisLease(settings)

    await lease.startup()

    assert not lease.available


def test_create_lease_follows_settings(settings, lease_settings):
    assert create_lease(settings) is None
    assert isinstance(create_lease(lease_settings), RedisLease)


# ============================================================================
# Cross-instance population
# ============================================================================

async def test_get_or_set_takes_and_releases_lease(cache, lease, fake_redis):
    cache.lease = lease

    async def compute():
        assert "lock:cache:k" in fake_redis.store
        return "value"

    assert await cache.get_or_set("k", compute, 60) == "value"
    assert fake_redis.store == {}


async def test_waits_for_value_from_other_instance(cache, lease, lease_settings, database, clock):
    other = CacheService(lease_settings, database, clock=clock)
    cache.lease = lease

    # Another worker holds the lease and is computing
    await lease.acquire("k")
    calls = 0

    async def compute():
        nonlocal calls
        calls += 1
        return "local"

    waiter = asyncio.create_task(cache.get_or_set("k", compute, 60))
    await wait_until(lambda: cache.waiting_on("k") == 1)
    await other.set("k", "remote", 60)

    assert await waiter == "remote"
    assert calls == 0


async def test_computes_locally_when_other_instance_never_delivers(cache, lease):
    cache.lease = lease
    await lease.acquire("k")

    async def compute():
        return "local"

    assert await cache.get_or_set("k", compute, 60) == "local"
    assert await cache.get("k") == "local"


async def test_redis_outage_falls_back_to_local_single_flight(cache, lease, fake_redis):
    cache.lease = lease
    fake_redis.fail = True

    async def compute():
        return "local"

    assert await cache.get_or_set("k", compute, 60) == "local"
