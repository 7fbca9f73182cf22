"""Single-flight guard for coroutine calls.

Collapses overlapping calls into one shared task so that, for example,
at most one refresh request is outstanding per session.
"""

from __future__ import annotations

import asyncio
import contextlib

from typing import TYPE_CHECKING, Any, Generic, TypeVar


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


T = TypeVar("T")


def _mark_retrieved(task: asyncio.Task[Any]) -> None:
    # Outcome may have no awaiting caller left; keep the loop from warning.
    if not task.cancelled():
        task.exception()


class SingleFlight(Generic[T]):
    """Run at most one call at a time; late callers join the running one.

    The shared task is dropped as soon as it settles, so the next
    ``run`` after completion starts a fresh call. Failures are shared
    too: every joined caller sees the same exception.

    Cancelling one waiter does not cancel the shared call.
    """

    def __init__(self) -> None:
        """Initialize an idle guard."""
        self._task: asyncio.Task[T] | None = None

    @property
    def in_flight(self) -> bool:
        """True while a call is running."""
        return self._task is not None

    async def _execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            self._task = None

    def start(self, fn: Callable[[], Awaitable[T]]) -> asyncio.Task[T]:
        """Return the running task, starting ``fn`` if none is running.

        Parameters
        ----------
        fn : callable
            Zero-argument coroutine function to run.

        Returns
        -------
        asyncio.Task
            The shared task.
        """
        if self._task is None:
            self._task = asyncio.ensure_future(self._execute(fn))
            self._task.add_done_callback(_mark_retrieved)
        return self._task

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` or join the call already in flight.

        Parameters
        ----------
        fn : callable
            Zero-argument coroutine function to run.

        Returns
        -------
        T
            The shared call's result.
        """
        return await asyncio.shield(self.start(fn))

    async def wait(self) -> Any:
        """Wait for the in-flight call, if any, ignoring its outcome."""
        task = self._task
        if task is None:
            return None
        with contextlib.suppress(Exception):
            return await asyncio.shield(task)
        return None
