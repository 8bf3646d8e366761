"""
Background Tasks
Keeps strong references to fire-and-forget tasks (storage writes, broadcast
pushes) and reports how each one ended.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """
    The event loop only holds weak references to tasks, so a task nobody keeps
    can be collected before it finishes. Tasks spawned here stay referenced
    until done; failures are logged, and a coroutine returning False (a
    rejected storage write) is logged as well.
    """

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        self._tasks: Set[asyncio.Task] = set()
        self.failed = 0

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> Optional[asyncio.Task]:
        """
        Schedules coro on the running loop. Without a running loop the
        coroutine is closed unstarted and None is returned.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro, name=f"{self.owner_id}:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.failed += 1
            logger.error(f"[{self.owner_id}] Background task {task.get_name()} failed: {error}", exc_info=error)
        elif task.result() is False:
            self.failed += 1
            logger.warning(f"[{self.owner_id}] Background task {task.get_name()} reported failure")

    async def wait(self) -> None:
        """Waits for every outstanding task, including ones spawned while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
