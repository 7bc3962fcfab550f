"""Named deferred checks.

Each purpose has at most one pending timer: scheduling a purpose cancels
whatever was pending under the same name first, so bursts of triggers
collapse into one check.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class DeferredTasks:
    """Cancel-before-reschedule timers keyed by purpose."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(
        self,
        purpose: str,
        delay: float,
        callback: Callable[[], Any],
    ) -> None:
        """Run *callback* after *delay* seconds, replacing any pending *purpose*."""
        self.cancel(purpose)
        handle = self._get_loop().call_later(
            max(0.0, delay), self._fire, purpose, callback,
        )
        self._handles[purpose] = handle
        logger.debug("Scheduled %s in %.3fs", purpose, delay)

    def cancel(self, purpose: str) -> bool:
        handle = self._handles.pop(purpose, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for purpose in list(self._handles):
            self.cancel(purpose)
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def pending(self, purpose: str | None = None) -> bool:
        if purpose is None:
            return bool(self._handles)
        return purpose in self._handles

    @property
    def purposes(self) -> list[str]:
        return sorted(self._handles)

    def _fire(self, purpose: str, callback: Callable[[], Any]) -> None:
        self._handles.pop(purpose, None)
        try:
            result = callback()
        except Exception:
            logger.exception("Deferred %s callback failed", purpose)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Deferred task failed: %s", exc, exc_info=exc)
