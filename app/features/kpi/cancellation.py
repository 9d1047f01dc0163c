"""Cooperative cancellation for KPI pipelines.

A ``CancellationToken`` is threaded through predicate building, route
selection and data-store calls. Cancelling it marks the token and cancels
every asyncio task spawned through it, which aborts any in-flight query.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


class CancellationToken:
    """Cancellation flag plus the set of tasks it owns."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Mark the token cancelled and cancel its pending tasks. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        for task in list(self._tasks):
            if not task.done():
                task.cancel(reason)

    def raise_if_cancelled(self) -> None:
        """Raise ``asyncio.CancelledError`` if the token was cancelled."""
        if self._cancelled:
            raise asyncio.CancelledError(self._reason)

    def spawn(self, coro: Coroutine[Any, Any, T], name: str | None = None) -> asyncio.Task[T]:
        """Schedule ``coro`` as a task owned by this token.

        Raises:
            asyncio.CancelledError: If the token is already cancelled.
        """
        if self._cancelled:
            coro.close()
            raise asyncio.CancelledError(self._reason)
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        """Number of owned tasks not yet finished."""
        return sum(1 for task in self._tasks if not task.done())
