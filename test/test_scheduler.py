import asyncio
import pytest

from mintgate.core.scheduler import PeriodicTask


@pytest.mark.asyncio
async def test_failed_iteration_does_not_stop_the_loop():
    calls = []

    async def tick():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("boom")

    task = PeriodicTask("t", 0.01, tick)
    task.start()
    while len(calls) < 3:
        await asyncio.sleep(0.01)
    await task.stop()
    assert not task.running
    assert task.iterations >= 3


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_iteration():
    entered = asyncio.Event()
    finished = []

    async def slow():
        entered.set()
        await asyncio.sleep(0.05)
        finished.append(True)

    task = PeriodicTask("slow", 10, slow)
    task.start()
    await entered.wait()
    await task.stop()
    assert finished == [True]
    assert task.iterations == 1
