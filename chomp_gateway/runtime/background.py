from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any


class BackgroundTasks:
    """Owns detached coroutines that must outlive the request that spawned them.

    The event loop only keeps weak references to tasks, so the registry holds
    a strong reference until each task finishes. ``drain`` is called on
    shutdown and gives in-flight work a bounded window to reach its final
    write before anything is cancelled.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> asyncio.Task[None]:
        if self._closed:
            coro.close()
            raise RuntimeError("Background task registry is closed.")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        self._closed = True
        if not self._tasks:
            return
        pending = set(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            if self._logger is not None:
                self._logger.warning(
                    "background_drain_timeout cancelled=%d", len(still_running)
                )
            await asyncio.gather(*still_running, return_exceptions=True)

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self._logger is not None:
            self._logger.error(
                "background_task_crashed name=%s error=%s",
                task.get_name(),
                exc,
                exc_info=exc,
            )
