"""Proactive refresh scheduling.

Uses the running event loop's ``call_later`` for the timer and launches
the refresh as a detached task whose failure is logged and discarded.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import time

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine


logger = logging.getLogger("tokensession.scheduler")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# Strong references to detached tasks; the loop only keeps weak ones.
_background_tasks: set[asyncio.Task[Any]] = set()


def spawn_detached(
    coro: Coroutine[Any, Any, Any],
    label: str,
    on_error: Callable[[BaseException], None] | None = None,
) -> asyncio.Task[Any]:
    """Run ``coro`` in the background and swallow its failure.

    Parameters
    ----------
    coro : Coroutine
        The coroutine to run.
    label : str
        Name used in log output.
    on_error : callable, optional
        Invoked with the exception if ``coro`` fails.

    Returns
    -------
    asyncio.Task
        The background task.
    """

    async def runner() -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Detached task %s failed: %s", label, exc)
            if on_error is not None:
                on_error(exc)

    task = asyncio.ensure_future(runner())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class RefreshScheduler:
    """Holds at most one pending timer that triggers a refresh.

    Arming replaces any pending timer; it never stacks a second one.

    Parameters
    ----------
    callback : callable
        Zero-argument coroutine function run when the timer fires.
    on_error : callable, optional
        Invoked with the exception if a scheduled run fails.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[Any]],
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        """Initialize an idle scheduler."""
        self._callback = callback
        self._on_error = on_error
        self._refresh_timer: asyncio.TimerHandle | None = None
        self._fire_at: float | None = None

    @property
    def pending(self) -> bool:
        """True if a timer is armed and has not fired yet."""
        return self._refresh_timer is not None

    @property
    def fire_at(self) -> float | None:
        """Loop time at which the armed timer fires, if any."""
        return self._fire_at

    def arm(self, delay_ms: float) -> None:
        """Schedule the callback ``delay_ms`` milliseconds from now.

        Any previously armed timer is cancelled first.

        Parameters
        ----------
        delay_ms : float
            Delay in milliseconds; negative values fire immediately.
        """
        self.cancel()
        loop = asyncio.get_running_loop()
        delay = max(delay_ms, 0) / 1000.0
        logger.debug("Scheduling token refresh in %.3fs", delay)
        self._fire_at = loop.time() + delay
        self._refresh_timer = loop.call_later(delay, self._fire)

    def cancel(self) -> None:
        """Cancel any pending timer."""
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None
            self._fire_at = None

    def _fire(self) -> None:
        """Timer callback: launch the scheduled refresh in the background."""
        self._refresh_timer = None
        self._fire_at = None
        spawn_detached(self._callback(), "scheduled-refresh", on_error=self._on_error)
