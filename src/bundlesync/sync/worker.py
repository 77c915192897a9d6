"""Bounded background task pool for out-of-band sync work.

Webhook event processing and publish runs are submitted here so a slow
platform operation never blocks request handling. Concurrency is capped by
a semaphore; shutdown cancels everything still running and waits for the
tasks to record their interruption.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

from src.bundlesync.core.monitoring import sync_tasks_in_flight

logger = structlog.get_logger(__name__)


class SyncTaskPool:
    """asyncio task pool with bounded concurrency and cooperative shutdown.

    Args:
        concurrency: Maximum number of tasks running at once.
    """

    def __init__(self, concurrency: int = 8) -> None:
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        """Schedule a coroutine; it starts once a slot is free.

        Raises:
            RuntimeError: If the pool is shutting down.
        """
        if self._closed:
            coro.close()
            raise RuntimeError("Sync task pool is shut down")

        task = asyncio.create_task(self._run(coro, name), name=name)
        self._tasks.add(task)
        sync_tasks_in_flight.inc()
        task.add_done_callback(self._on_done)
        return task

    async def _run(self, coro: Coroutine[Any, Any, Any], name: str) -> Any:
        try:
            async with self._semaphore:
                return await coro
        except asyncio.CancelledError:
            logger.info("worker.task_cancelled", task=name)
            raise
        except Exception:
            logger.error("worker.task_failed", task=name, exc_info=True)
            raise
        finally:
            # Never-started coroutines must be closed to avoid a warning
            if coro.cr_frame is not None and not coro.cr_running:
                coro.close()

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        sync_tasks_in_flight.dec()
        if not task.cancelled():
            # Consume the exception; it was already logged in _run
            task.exception()

    async def drain(self) -> None:
        """Wait until every submitted task (including ones they submit) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all tasks and wait for their cancellation handlers to finish."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("worker.pool_shutdown", cancelled=len(tasks))
