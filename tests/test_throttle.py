from __future__ import annotations

import asyncio
import time

import pytest

from custody.utils.throttle import DispatchThrottle


@pytest.mark.asyncio
async def test_never_more_than_max_in_flight_and_spacing_respected():
    throttle = DispatchThrottle(max_concurrent=3, min_interval=0.05)
    peak = {"now": 0, "max": 0}
    starts = []

    async def unit(i: int) -> int:
        starts.append(time.monotonic())
        peak["now"] += 1
        peak["max"] = max(peak["max"], peak["now"])
        await asyncio.sleep(0.12)
        peak["now"] -= 1
        return i

    t0 = time.monotonic()
    results = await asyncio.gather(*[throttle.submit(unit, i) for i in range(10)])
    elapsed = time.monotonic() - t0

    assert results == list(range(10))
    assert peak["max"] <= 3
    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert all(g >= 0.045 for g in gaps)
    assert elapsed >= 9 * 0.05


@pytest.mark.asyncio
async def test_near_instant_units_take_at_least_nine_intervals():
    throttle = DispatchThrottle(max_concurrent=3, min_interval=0.03)
    t0 = time.monotonic()
    await asyncio.gather(*[throttle.submit(lambda: None) for _ in range(10)])
    assert time.monotonic() - t0 >= 9 * 0.03 - 0.005


@pytest.mark.asyncio
async def test_waiting_units_start_in_submission_order():
    throttle = DispatchThrottle(max_concurrent=1, min_interval=0.0)
    order = []

    async def unit(i: int) -> None:
        order.append(i)
        await asyncio.sleep(0.01)

    await asyncio.gather(*[throttle.submit(unit, i) for i in range(6)])
    assert order == list(range(6))


@pytest.mark.asyncio
async def test_failure_passes_through_and_does_not_poison_queue():
    throttle = DispatchThrottle(max_concurrent=2, min_interval=0.0)

    async def boom() -> None:
        raise ValueError("unit failed")

    async def ok() -> str:
        return "fine"

    results = await asyncio.gather(
        throttle.submit(boom), throttle.submit(ok), throttle.submit(boom), throttle.submit(ok),
        return_exceptions=True,
    )
    assert isinstance(results[0], ValueError)
    assert results[1] == "fine"
    assert isinstance(results[2], ValueError)
    assert results[3] == "fine"
    assert throttle.in_flight == 0
    assert throttle.waiting == 0


@pytest.mark.asyncio
async def test_sync_callables_are_supported():
    throttle = DispatchThrottle()
    assert await throttle.submit(lambda a, b: a + b, 2, 3) == 5


def test_invalid_configuration_rejected():
    with pytest.raises(ValueError):
        DispatchThrottle(max_concurrent=0)
    with pytest.raises(ValueError):
        DispatchThrottle(min_interval=-1)


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_hold_a_slot():
    throttle = DispatchThrottle(max_concurrent=1, min_interval=0.0)
    release = asyncio.Event()

    async def blocker() -> str:
        await release.wait()
        return "done"

    first = asyncio.create_task(throttle.submit(blocker))
    await asyncio.sleep(0)
    doomed = asyncio.create_task(throttle.submit(lambda: "never"))
    await asyncio.sleep(0)
    doomed.cancel()
    with pytest.raises(asyncio.CancelledError):
        await doomed

    release.set()
    assert await first == "done"
    assert await asyncio.wait_for(throttle.submit(lambda: "next"), timeout=1) == "next"
    assert throttle.waiting == 0
