"""Supervised fire-and-forget tasks.

Summarization, memory extraction, agent execution and experience
consolidation run detached from the request that triggers them. The
supervisor keeps a strong reference to each task until it finishes and logs
any exception, so a failing side effect is visible but never reaches the
caller.
"""

import asyncio
import logging
from typing import Awaitable, Optional

logger = logging.getLogger(__name__)


class BackgroundTaskSupervisor:
    """Owns detached asyncio tasks and logs their failures."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro`` without awaiting it."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("Background task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            logger.error(
                "Background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every task (including ones spawned meanwhile) is done."""
        while self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
            if timeout is not None:
                break

    async def shutdown(self) -> None:
        """Cancel outstanding tasks and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
