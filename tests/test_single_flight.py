"""Stampede protection: one computation per key, shared by every waiter."""

import asyncio

import pytest

from conftest import wait_until
from core.single_flight import KeyedLock, SingleFlight


# ============================================================================
# get_or_set
# ============================================================================

async def test_concurrent_misses_compute_once(cache):
    calls = 0
    release = asyncio.Event()

    async def compute():
        nonlocal calls
        calls += 1
        await release.wait()
        return {"forecast": "sunny"}

    callers = [asyncio.create_task(cache.get_or_set("weather:nyc", compute, 60)) for _ in range(50)]
    await wait_until(lambda: cache.waiting_on("weather:nyc") == 50)
    release.set()

    results = await asyncio.gather(*callers)

    assert calls == 1
    assert all(result == {"forecast": "sunny"} for result in results)
    assert await cache.get("weather:nyc") == {"forecast": "sunny"}
    assert cache.waiting_on("weather:nyc") == 0


async def test_concurrent_misses_compute_once_without_holding_compute(cache):
    calls = 0

    async def compute():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0)
        return "v"

    results = await asyncio.gather(*(cache.get_or_set("k", compute, 60) for _ in range(50)))

    assert calls == 1
    assert results == ["v"] * 50


async def test_round_started_after_population_reuses_stored_value(cache):
    calls = 0

    async def compute():
        nonlocal calls
        calls += 1
        return "v"

    await cache.set("k", "stored", 60)
    # A caller that missed before the value landed still enters a round
    assert await cache._flight.do("k", lambda: cache._populate("k", compute, 60, [], {})) == "stored"
    assert calls == 0


async def test_cached_value_skips_compute(cache):
    await cache.set("k", "cached", 60)

    async def compute():
        raise AssertionError("must not be called")

    assert await cache.get_or_set("k", compute, 60) == "cached"


async def test_get_or_set_applies_tags_and_metadata(cache):
    async def compute():
        return [1, 2, 3]

    await cache.get_or_set("k", compute, 60, tags=["numbers"], metadata={"source": "compute"})

    record = await cache.describe("k")
    assert record.tags == ["numbers"]
    assert record.metadata == {"source": "compute"}


async def test_failure_reaches_every_waiter_and_is_not_cached(cache):
    calls = 0
    release = asyncio.Event()

    async def failing():
        nonlocal calls
        calls += 1
        await release.wait()
        raise ValueError("upstream 503")

    callers = [asyncio.create_task(cache.get_or_set("k", failing, 60)) for _ in range(5)]
    await wait_until(lambda: cache.waiting_on("k") == 5)
    release.set()

    results = await asyncio.gather(*callers, return_exceptions=True)

    assert calls == 1
    assert all(isinstance(result, ValueError) for result in results)
    assert await cache.describe("k") is None

    async def working():
        nonlocal calls
        calls += 1
        return "recovered"

    assert await cache.get_or_set("k", working, 60) == "recovered"
    assert calls == 2


async def test_waiter_timeout_does_not_cancel_computation(cache):
    calls = 0
    started = asyncio.Event()
    release = asyncio.Event()

    async def compute():
        nonlocal calls
        calls += 1
        started.set()
        await release.wait()
        return "report"

    patient = asyncio.create_task(cache.get_or_set("k", compute, 60))
    await started.wait()

    with pytest.raises(asyncio.TimeoutError):
        await cache.get_or_set("k", compute, 60, timeout=0.05)

    release.set()

    assert await patient == "report"
    assert calls == 1
    assert await cache.get("k") == "report"


async def test_timed_out_waiter_is_no_longer_counted(cache):
    release = asyncio.Event()

    async def compute():
        await release.wait()
        return "report"

    patient = asyncio.create_task(cache.get_or_set("k", compute, 60))
    await wait_until(lambda: cache.waiting_on("k") == 1)

    with pytest.raises(asyncio.TimeoutError):
        await cache.get_or_set("k", compute, 60, timeout=0.05)

    assert cache.waiting_on("k") == 1

    release.set()
    assert await patient == "report"
    assert cache.waiting_on("k") == 0


async def test_unrelated_keys_do_not_block_each_other(cache):
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "slow"

    async def fast():
        return "fast"

    slow_caller = asyncio.create_task(cache.get_or_set("slow", slow, 60))
    await wait_until(lambda: cache.waiting_on("slow") == 1)

    assert await asyncio.wait_for(cache.get_or_set("fast", fast, 60), 5) == "fast"
    assert not slow_caller.done()

    release.set()
    assert await slow_caller == "slow"


async def test_none_result_is_returned_but_not_cached(cache):
    calls = 0

    async def compute():
        nonlocal calls
        calls += 1
        return None

    assert await cache.get_or_set("k", compute, 60) is None
    assert await cache.get_or_set("k", compute, 60) is None
    assert calls == 2
    assert await cache.describe("k") is None


async def test_statistics_report_in_flight_keys(cache):
    release = asyncio.Event()

    async def compute():
        await release.wait()
        return 1

    caller = asyncio.create_task(cache.get_or_set("k", compute, 60))
    await wait_until(lambda: cache.waiting_on("k") == 1)

    assert (await cache.statistics()).in_flight == 1

    release.set()
    await caller
    assert (await cache.statistics()).in_flight == 0


# ============================================================================
# SingleFlight
# ============================================================================

async def test_single_flight_shares_result():
    flight = SingleFlight()
    release = asyncio.Event()
    calls = 0

    async def fn():
        nonlocal calls
        calls += 1
        await release.wait()
        return 7

    first = asyncio.create_task(flight.do("k", fn))
    second = asyncio.create_task(flight.do("k", fn))
    await wait_until(lambda: flight.in_flight("k") == 2)

    assert flight.keys() == ["k"]
    assert flight.in_flight() == 1

    release.set()
    assert await asyncio.gather(first, second) == [7, 7]
    assert calls == 1
    assert flight.in_flight() == 0
    assert flight.keys() == []


async def test_single_flight_key_is_idle_before_result_is_published():
    flight = SingleFlight()

    async def fn():
        return "done"

    assert await flight.do("k", fn) == "done"
    assert flight.in_flight("k") == 0


async def test_cancelled_subscriber_is_no_longer_counted():
    flight = SingleFlight()
    release = asyncio.Event()

    async def fn():
        await release.wait()
        return 1

    first = asyncio.create_task(flight.do("k", fn))
    second = asyncio.create_task(flight.do("k", fn))
    await wait_until(lambda: flight.in_flight("k") == 2)

    second.cancel()
    with pytest.raises(asyncio.CancelledError):
        await second
    assert flight.in_flight("k") == 1

    release.set()
    assert await first == 1


async def test_single_flight_cancel_all():
    flight = SingleFlight()

    async def never():
        await asyncio.Event().wait()

    waiter = asyncio.create_task(flight.do("k", never))
    await wait_until(lambda: flight.in_flight("k") == 1)

    await flight.cancel_all()

    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert flight.in_flight() == 0


# ============================================================================
# KeyedLock
# ============================================================================

async def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    order = []

    async def worker(name):
        async with locks.hold("k"):
            order.append(f"{name}:in")
            await asyncio.sleep(0.01)
            order.append(f"{name}:out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a:in", "a:out", "b:in", "b:out"]
    assert len(locks) == 0


async def test_keyed_lock_is_released_on_error():
    locks = KeyedLock()

    with pytest.raises(RuntimeError):
        async with locks.hold("k"):
            assert len(locks) == 1
            raise RuntimeError("boom")

    assert len(locks) == 0
    async with locks.hold("k"):
        pass
