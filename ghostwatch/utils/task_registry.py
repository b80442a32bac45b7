"""
Named registry of background asyncio tasks.

Each scheduler owns one registry (key -> task) so it can replace, cancel
and await its timers on shutdown without reaching into global state.
"""

import asyncio
import logging
from typing import Coroutine, Dict, Hashable, Iterator, Optional

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Owns a set of keyed tasks; scheduling a key replaces its previous task."""

    def __init__(self, name: str = "tasks") -> None:
        self.name = name
        self._tasks: Dict[Hashable, asyncio.Task] = {}

    def __contains__(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    def __iter__(self) -> Iterator[Hashable]:
        return iter(list(self._tasks))

    def get(self, key: Hashable) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def schedule(self, key: Hashable, coro: Coroutine) -> asyncio.Task:
        """Start *coro* under *key*, cancelling whatever ran under it before."""
        previous = self._tasks.get(key)
        current = asyncio.current_task()
        if previous is not None and not previous.done() and previous is not current:
            previous.cancel()

        task = asyncio.create_task(coro, name=f"{self.name}:{key}")
        self._tasks[key] = task

        def _on_done(t: asyncio.Task) -> None:
            if self._tasks.get(key) is t:
                del self._tasks[key]
            if t.cancelled():
                logger.debug("Task cancelled: %s", t.get_name())
            elif t.exception() is not None:
                exc = t.exception()
                logger.error(
                    "Task failed: %s",
                    t.get_name(),
                    exc_info=(type(exc), exc, exc.__traceback__),
                )

        task.add_done_callback(_on_done)
        return task

    def cancel(self, key: Hashable) -> bool:
        """Cancel the task under *key*. Returns False when nothing was running."""
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    async def cancel_all(self, timeout: float = 5.0) -> int:
        """Cancel every task and wait for them to finish.

        Returns:
            Number of tasks that were cancelled
        """
        tasks = [t for t in self._tasks.values() if t is not asyncio.current_task()]
        self._tasks.clear()
        if not tasks:
            return 0

        for task in tasks:
            if not task.done():
                task.cancel()

        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Timeout waiting for %s tasks to cancel. Remaining: %d",
                self.name,
                len([t for t in tasks if not t.done()]),
            )

        cancelled = sum(1 for t in tasks if t.cancelled())
        logger.info("Cancelled %d/%d %s tasks", cancelled, len(tasks), self.name)
        return cancelled
