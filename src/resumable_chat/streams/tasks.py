"""Tracking of background tasks that outlive a request."""

import asyncio
from typing import Any, Coroutine, Optional, Set

import structlog

logger = structlog.get_logger()


class BackgroundTasks:
    """Keeps strong references to detached tasks and cancels them on shutdown."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_failed", task=task.get_name(), error=str(exc))

    def __len__(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait for every tracked task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cleanup(self) -> None:
        """Cancel all tracked tasks."""
        tasks = list(self._tasks)
        for task in tasks:
            if not task.done():
                task.cancel()

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        logger.info("background_tasks_cleaned_up", cancelled=len(tasks))
