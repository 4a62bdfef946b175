"""
PeriodicTask - recurring background job owned by the service lifespan.

The job body is synchronous and runs in the default executor so it never
blocks the event loop. stop() cancels the loop and waits for it to finish.
"""

import asyncio
from typing import Callable, Optional

import structlog

logger = structlog.get_logger()


class PeriodicTask:
    def __init__(self, name: str, interval: float, fn: Callable[[], object], initial_delay: float = 0.0):
        self.name = name
        self.interval = interval
        self.initial_delay = initial_delay
        self._fn = fn
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self):
        """Run the job body synchronously (used by tests and by the loop)."""
        result = self._fn()
        self.runs += 1
        return result

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("periodic_task_started", task=self.name, interval=self.interval)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("periodic_task_stopped", task=self.name, runs=self.runs)

    async def _loop(self) -> None:
        if self.initial_delay:
            await asyncio.sleep(self.initial_delay)
        loop = asyncio.get_running_loop()
        while True:
            try:
                await loop.run_in_executor(None, self.run_once)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("periodic_task_error", task=self.name, error=str(exc))
            await asyncio.sleep(self.interval)
