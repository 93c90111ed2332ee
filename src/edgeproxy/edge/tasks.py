"""Detached store writes and per-key coordination of origin fetches."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Coroutine, Dict, Generic, TypeVar

import structlog

LOGGER = structlog.get_logger("edgeproxy.tasks")

T = TypeVar("T")


class BackgroundWriter:
    """Tracks fire-and-forget store writes until they finish.

    Tasks are not tied to the request that scheduled them, so a client
    disconnect does not cancel a write. :meth:`drain` is awaited at shutdown.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, coro: Coroutine[object, object, object], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            LOGGER.warning("background_write_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("background_write_failed", task=task.get_name(), error=str(exc))

    async def drain(self, timeout: float | None = None) -> None:
        if not self._tasks:
            return
        pending_count = len(self._tasks)
        LOGGER.info("background_writes_draining", pending=pending_count)
        _, still_pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if still_pending:
            LOGGER.warning("background_writes_abandoned", pending=len(still_pending))
            for task in still_pending:
                task.cancel()
            await asyncio.gather(*still_pending, return_exceptions=True)


class SingleFlight(Generic[T]):
    """Shares one in-flight call per key among concurrent callers.

    The shared call runs in its own task, so a caller that goes away does not
    cancel the result for the others.
    """

    def __init__(self) -> None:
        self._calls: Dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._calls)

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        """Return ``(result, leader)``; only the leader actually invoked ``fn``."""
        task = self._calls.get(key)
        leader = task is None
        if task is None:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(lambda done, key=key: self._release(key, done))
        return await asyncio.shield(task), leader

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        if not task.cancelled():
            task.exception()
