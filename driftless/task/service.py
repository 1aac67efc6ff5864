"""Tracking of the asyncio tasks started by driftless components.

Pipeline runs are finite tasks that `block_till_done` waits for. Application
workers, watch streams and source pollers are background loops that only end
when cancelled.
"""

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService:
    """Owns the tasks started by the controller, the watcher and the trigger."""

    def __init__(self) -> None:
        # Maps each running task to whether it is a background loop
        self._tasks: dict[asyncio.Task[Any], bool] = {}

    def _track(
        self, coro: Coroutine[None, None, Any], name: str | None, background: bool
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks[task] = background
        task.add_done_callback(self._on_done)
        return task

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Start a task that is expected to finish on its own."""
        return self._track(coro, name, background=False)

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Start a loop that runs until cancelled."""
        return self._track(coro, name, background=True)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            return
        if (err := task.exception()) is not None:
            _LOGGER.error("Task %s failed: %s", task.get_name(), err)

    def pending(self, background: bool = False) -> list[str]:
        """Names of the running finite tasks, or of the background loops."""
        return sorted(
            task.get_name() for task, bg in self._tasks.items() if bg == background
        )

    async def block_till_done(self) -> None:
        """Wait for the finite tasks running now, not ones started meanwhile."""
        tasks = [task for task, bg in self._tasks.items() if not bg]
        if not tasks:
            await asyncio.sleep(0)
            return
        _LOGGER.debug("Waiting for %d tasks to complete", len(tasks))
        await asyncio.wait(tasks)

    async def cancel_all(self) -> None:
        """Cancel every tracked task and wait for them to finish."""
        tasks = list(self._tasks)
        if not tasks:
            return
        _LOGGER.debug("Cancelling %d tasks", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.wait(tasks)
