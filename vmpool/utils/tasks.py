"""Fire-and-forget task spawning with failure capture.

Every per-machine operation runs as its own asyncio task so one slow
provider call never blocks a tick. The spawner keeps strong references
until each task finishes and logs any exception at the task boundary.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

logger = structlog.get_logger()


class Spawner:
    """Owns background tasks spawned by workers."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._failures = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def failures(self) -> int:
        return self._failures

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str,
        **log_context: Any,
    ) -> asyncio.Task:
        """Schedule coro and return its task without awaiting it."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, log_context))
        return task

    def _on_done(self, task: asyncio.Task, log_context: dict[str, Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._failures += 1
            logger.error(
                "task.failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
                **log_context,
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until all spawned tasks (including ones they spawn) finish."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            if remaining == 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)
        # Let done callbacks run
        await asyncio.sleep(0)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
