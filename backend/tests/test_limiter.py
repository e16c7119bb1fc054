"""Tests for the concurrency limiter."""

import asyncio

import pytest

from seo_pipeline.services.limiter import ConcurrencyLimiter


@pytest.mark.asyncio
@pytest.mark.parametrize("cap", [1, 3])
async def test_never_exceeds_cap(cap: int) -> None:
    limiter = ConcurrencyLimiter("scraping", cap)
    in_flight = 0
    peak = 0

    async def operation(i: int) -> int:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.001 * (i % 3))
        in_flight -= 1
        return i

    results = await asyncio.gather(*(limiter.limit(lambda i=i: operation(i)) for i in range(20)))

    assert results == list(range(20))
    assert peak == cap
    assert limiter.active == 0


@pytest.mark.asyncio
async def test_waiters_start_in_submission_order() -> None:
    limiter = ConcurrencyLimiter("llm", 1)
    started = []

    async def operation(i: int) -> None:
        started.append(i)
        await asyncio.sleep(0)

    await asyncio.gather(*(limiter.limit(lambda i=i: operation(i)) for i in range(5)))

    assert started == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_failure_releases_the_slot() -> None:
    limiter = ConcurrencyLimiter("llm", 1)

    async def boom() -> None:
        raise RuntimeError("boom")

    async def fine() -> str:
        return "fine"

    with pytest.raises(RuntimeError):
        await limiter.limit(boom)
    assert await limiter.limit(fine) == "fine"
    assert limiter.active == 0


@pytest.mark.asyncio
async def test_independent_limiters_do_not_share_slots() -> None:
    scraping = ConcurrencyLimiter("scraping", 1)
    llm = ConcurrencyLimiter("llm", 1)
    release = asyncio.Event()

    async def hold() -> None:
        await release.wait()

    async def quick() -> str:
        return "done"

    held = asyncio.create_task(scraping.limit(hold))
    await asyncio.sleep(0)
    assert await asyncio.wait_for(llm.limit(quick), timeout=1) == "done"
    release.set()
    await held


def test_cap_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ConcurrencyLimiter("bad", 0)
