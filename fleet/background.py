"""Supervised fire-and-forget tasks.

Side effects such as telemetry posts, usage events and backup commit
statuses run as asyncio tasks that nobody awaits. The supervisor holds a
reference to each task until it finishes and logs any exception it
raised, so a failing side effect never reaches the caller.
"""

import asyncio
import logging
from collections.abc import Coroutine
from functools import lru_cache
from typing import Any

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """Owns a set of background tasks and logs their failures."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        """Schedule ``coro`` without awaiting it."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned so far, including ones they spawn."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


@lru_cache
def get_task_supervisor() -> TaskSupervisor:
    """Get the process-wide task supervisor."""
    return TaskSupervisor()
