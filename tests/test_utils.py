import asyncio

import pytest

from app.utils.concurrency import BoundedRunner
from app.utils.retry import retry_async


@pytest.mark.asyncio
async def test_retry_async_gives_up_on_non_retryable():
    calls = []

    async def flaky():
        calls.append(1)
        raise ValueError("bad input")

    wrapped = retry_async(flaky, attempts=3, base_delay=0)
    with pytest.raises(ValueError):
        await wrapped()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_retry_async_recovers():
    attempts = iter([OSError("reset"), OSError("reset"), None])
    delays = []

    async def sleep(delay):
        delays.append(delay)

    async def sometimes():
        error = next(attempts)
        if error:
            raise error
        return "ok"

    assert await retry_async(sometimes, attempts=3, base_delay=1.5, sleep=sleep)() == "ok"
    assert delays == [1.5, 3.0]


@pytest.mark.asyncio
async def test_bounded_runner_limits_and_orders():
    runner = BoundedRunner(limit=3)

    async def work(value):
        await asyncio.sleep(0.01 * (5 - value))
        return value * 2

    assert await runner.map(work, range(5)) == [0, 2, 4, 6, 8]
    assert runner.peak_in_flight == 3
    assert runner.in_flight == 0


def test_bounded_runner_rejects_zero_limit():
    with pytest.raises(ValueError):
        BoundedRunner(limit=0)
