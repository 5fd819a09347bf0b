"""Cancellable background tasks keyed by the entity they target."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

LOG = logging.getLogger(__name__)

ResultCallback = Callable[[Any], None]


class KeyedTasks:
    """At most one live task per key; stale results are dropped.

    Submitting under a key cancels whatever was running for it, and
    :meth:`cancel` tears a key down. ``on_result`` only runs when the task
    finishing is still the one registered for its key.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def submit(
        self,
        key: str,
        coro_factory: Callable[[], Awaitable[Any]],
        *,
        on_result: ResultCallback | None = None,
        delay: float = 0.0,
    ) -> asyncio.Task[Any]:
        """Schedule a coroutine for ``key``, cancelling any pending one."""

        self.cancel(key)
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._runner(key, coro_factory, on_result, delay))
        self._tasks[key] = task
        return task

    def cancel(self, key: str) -> None:
        task = self._tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    def cancel_prefix(self, prefix: str) -> None:
        for key in [key for key in self._tasks if key.startswith(prefix)]:
            self.cancel(key)

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    def pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def keys(self) -> tuple[str, ...]:
        return tuple(key for key, task in self._tasks.items() if not task.done())

    async def drain(self) -> None:
        """Wait for every live task (testing helper)."""

        while True:
            live = [task for task in self._tasks.values() if not task.done()]
            if not live:
                return
            await asyncio.gather(*live, return_exceptions=True)

    async def _runner(
        self,
        key: str,
        coro_factory: Callable[[], Awaitable[Any]],
        on_result: ResultCallback | None,
        delay: float,
    ) -> None:
        current = asyncio.current_task()
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            result = await coro_factory()
        except asyncio.CancelledError:
            return
        except Exception:
            LOG.exception("Background task failed", extra={"task_key": key})
            if self._tasks.get(key) is current:
                del self._tasks[key]
            return
        if self._tasks.get(key) is not current:
            return
        del self._tasks[key]
        if on_result is None:
            return
        try:
            on_result(result)
        except Exception:
            LOG.exception("Failed to apply background result", extra={"task_key": key})


__all__ = ["KeyedTasks"]
