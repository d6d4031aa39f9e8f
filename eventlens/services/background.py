from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine


logger = logging.getLogger(__name__)


class BackgroundRunner:
    """Own fire-and-forget tasks detached from the request that spawned them.

    The event loop only keeps weak references to tasks, so the runner holds
    them until completion. Failures are logged and never re-raised; callers
    that need completion (tests, shutdown) call :meth:`drain`.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("background_task_cancelled name=%s", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("background_task_failed name=%s", task.get_name(), exc_info=exc)

    async def drain(self, timeout: float | None = None) -> None:
        # Wait for in-flight tasks, including ones spawned while draining.
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            for task in done:
                self._tasks.discard(task)
            if not_done:
                logger.warning("background_drain_timeout pending=%s", len(not_done))
                return
