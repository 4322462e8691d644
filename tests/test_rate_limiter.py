import asyncio

import pytest

from scraper.rate_limiter import RateLimiter


@pytest.mark.asyncio
@pytest.mark.parametrize("parallel,delay_ms", [(1, 30), (3, 20), (4, 0)])
async def test_starts_are_spaced_and_concurrency_is_bounded(parallel, delay_ms):
    limiter = RateLimiter(parallel, delay_ms)
    starts = []
    active = 0
    peak = 0

    async def job():
        nonlocal active, peak
        async with limiter.limit() as permit:
            starts.append(permit.started_at)
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

    await asyncio.gather(*(job() for _ in range(8)))

    starts.sort()
    gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
    assert len(starts) == 8
    assert min(gaps) >= delay_ms / 1000 - 1e-6
    assert peak <= parallel
    assert limiter.active == 0


@pytest.mark.asyncio
async def test_waiters_are_released_in_fifo_order():
    limiter = RateLimiter(1, 0)
    held = await limiter.acquire()
    order = []

    async def waiter(n):
        permit = await limiter.acquire()
        order.append(n)
        limiter.release(permit)

    tasks = []
    for n in range(4):
        tasks.append(asyncio.create_task(waiter(n)))
        await asyncio.sleep(0)

    assert limiter.waiting == 4

    limiter.release(held)
    await asyncio.gather(*tasks)

    assert order == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_release_is_idempotent():
    limiter = RateLimiter(2, 0)
    permit = await limiter.acquire()

    limiter.release(permit)
    limiter.release(permit)

    assert limiter.active == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_a_slot():
    limiter = RateLimiter(1, 0)
    held = await limiter.acquire()

    cancelled = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0)
    cancelled.cancel()
    with pytest.raises(asyncio.CancelledError):
        await cancelled

    limiter.release(held)
    assert limiter.active == 0

    permit = await asyncio.wait_for(limiter.acquire(), timeout=1)
    assert limiter.active == 1
    limiter.release(permit)


def test_rejects_invalid_limits():
    with pytest.raises(ValueError):
        RateLimiter(0, 10)
    with pytest.raises(ValueError):
        RateLimiter(1, -1)
