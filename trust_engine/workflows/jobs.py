"""
Tracked background tasks.

Work that must not hold up the caller (export/erasure processing, risk
analysis after a guarded request) is spawned here instead of with a bare
``asyncio.create_task``. The task set keeps a strong reference to every
running task, logs exceptions that nobody awaited, and lets shutdown wait
for in-flight work.

Usage:
    jobs = BackgroundJobs()
    jobs.spawn(orchestrator._process(request_id), name=f"erasure:{request_id}")
    await jobs.drain(timeout=30)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundJobs:
    """Set of fire-and-forget tasks with shutdown support."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        """Number of tasks still running."""
        return len(self._tasks)

    @property
    def closed(self) -> bool:
        return self._closed

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop.

        Raises:
            RuntimeError: The job set was drained and accepts no more work
        """
        if self._closed:
            coro.close()
            raise RuntimeError("BackgroundJobs is closed")
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background job %s failed: %s", task.get_name(), exc, exc_info=exc
            )

    async def drain(self, timeout: float | None = None) -> bool:
        """Stop accepting work and wait for running tasks.

        Tasks still running after ``timeout`` are cancelled.

        Returns:
            True if every task finished on its own
        """
        self._closed = True
        if not self._tasks:
            return True

        tasks = list(self._tasks)
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        if not still_running:
            return True

        logger.warning("Cancelling %d background jobs after drain timeout", len(still_running))
        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)
        return False


__all__ = ["BackgroundJobs"]
