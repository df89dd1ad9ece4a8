"""Timer and background-task scheduling for the client core.

Every delayed action in the client (request timeouts, ping ticks, reconnect
backoff) goes through a ``Scheduler`` so tests can substitute virtual time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any, Protocol

_LOGGER = logging.getLogger(__name__)


class TimerHandle(Protocol):
    """Handle for a delayed callback. ``cancel`` is safe to call repeatedly."""

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Single-threaded scheduling contract used by all core components."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds unless cancelled."""
        ...

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        """Run ``coro`` in the background, logging any exception it raises."""
        ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or _LOGGER
        self._tasks: set[asyncio.Task[Any]] = set()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(max(delay, 0.0), callback)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            self._logger.error(
                "Background task %s failed: %s",
                task.get_name(),
                err,
                exc_info=err,
            )
