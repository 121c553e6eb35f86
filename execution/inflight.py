"""
In-flight coalescing — concurrent requests for the same key share one task.

Used for proxy creation, bag creation and position index enumeration so a
second caller waits on the operation already running instead of repeating it.
"""
import asyncio
from typing import Awaitable, Callable, Hashable

from loguru import logger


class InFlight:

    def __init__(self, name: str):
        self.name = name
        self._tasks: dict[Hashable, asyncio.Future] = {}

    async def run(self, key: Hashable, factory: Callable[[], Awaitable]):
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        else:
            logger.debug(f'[{self.name}] Joining in-flight operation for {key}')
        return await asyncio.shield(task)

    def _forget(self, key, task):
        if self._tasks.get(key) is task:
            del self._tasks[key]
