# /mintgate/core/scheduler.py

import asyncio
from typing import Awaitable, Callable

from mintgate.core.logger import get_logger

log = get_logger(__name__)


class PeriodicTask:
    """
    Runs ``fn`` every ``interval`` seconds on one asyncio task.

    Iterations never overlap. ``stop()`` signals shutdown and waits for an
    in-flight iteration to finish instead of cancelling it mid-step.
    """
    def __init__(self, name: str, interval: float, fn: Callable[[], Awaitable[None]], run_immediately: bool = True):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.run_immediately = run_immediately
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.iterations = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        log.info("PERIODIC_TASK_STARTED", task=self.name, interval=self.interval)

    async def _run(self):
        if not self.run_immediately:
            await self._sleep()
        while not self._stop.is_set():
            try:
                await self.fn()
            except Exception as e:
                # One failed iteration never kills the loop.
                log.error("PERIODIC_TASK_ITERATION_FAILED", task=self.name, error=str(e), exc_info=True)
            self.iterations += 1
            await self._sleep()

    async def _sleep(self):
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    async def stop(self):
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        log.info("PERIODIC_TASK_STOPPED", task=self.name, iterations=self.iterations)
