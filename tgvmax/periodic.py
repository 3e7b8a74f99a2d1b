"""Background loops for sweeps and scheduler ticks"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger

Job = Callable[[], Union[Any, Awaitable[Any]]]


class PeriodicTask:
    """
    Runs a job every `interval` seconds on the event loop.

    The first run happens one interval after start(). A failing job is
    logged and the loop keeps going.
    """

    def __init__(self, name: str, interval: float, job: Job):
        self.name = name
        self.interval = interval
        self.job = job
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.debug(f"⏱️ Started periodic task '{self.name}' every {self.interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Stopped periodic task '{self.name}'")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                result = self.job()
                if asyncio.iscoroutine(result):
                    await result
                self.runs += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ Periodic task '{self.name}' failed: {e}")
