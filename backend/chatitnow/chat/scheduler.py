"""Cancellable timers on the running asyncio loop.

Phase delays, grace periods and the idle sweep are all scheduled work, never
blocking sleeps inside a handler. A ``ScheduledTask`` is stored on the state
it guards (a Session, a pool entry) and is cancelled by whatever transition
supersedes it.

Once a task has fired its body runs to completion: ``cancel()`` on a fired
task is a no-op. Bodies therefore re-check the state they act on.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class ScheduledTask:
    """Handle for one delayed coroutine call."""

    def __init__(
        self,
        scheduler: "Scheduler",
        delay: float,
        callback: TimerCallback,
        name: str,
    ) -> None:
        self.name = name
        self._scheduler = scheduler
        self._callback = callback
        self._fired = False
        self._cancelled = False
        loop = asyncio.get_running_loop()
        self._handle: asyncio.TimerHandle = loop.call_later(delay, self._fire)

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        """True while the timer is still waiting to fire."""
        return not self._fired and not self._cancelled

    def cancel(self) -> bool:
        """Stop the timer if it has not fired yet.

        Returns:
            True if this call prevented the callback from running.
        """
        if not self.active:
            return False
        self._cancelled = True
        self._handle.cancel()
        self._scheduler._forget(self)
        return True

    def _fire(self) -> None:
        self._fired = True
        self._scheduler._forget(self)
        self._scheduler._spawn(self._callback(), self.name)

    def __repr__(self) -> str:
        state = "fired" if self._fired else "cancelled" if self._cancelled else "pending"
        return f"<ScheduledTask {self.name} {state}>"


class Scheduler:
    """Creates ScheduledTasks and owns the tasks their callbacks run in.

    Tasks are kept referenced until done so the loop cannot garbage-collect
    a running callback, and so shutdown can cancel everything outstanding.
    """

    def __init__(self) -> None:
        self._pending: Set[ScheduledTask] = set()
        self._running: Set[asyncio.Task] = set()

    def schedule(self, delay: float, callback: TimerCallback, name: str = "timer") -> ScheduledTask:
        task = ScheduledTask(self, max(delay, 0.0), callback, name)
        self._pending.add(task)
        return task

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def shutdown(self) -> None:
        """Cancel every pending timer and running callback."""
        for task in list(self._pending):
            task.cancel()
        for running in list(self._running):
            running.cancel()
        self._running.clear()
        logger.info("[Scheduler] Shutdown complete")

    def _forget(self, task: ScheduledTask) -> None:
        self._pending.discard(task)

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task:
        running = asyncio.ensure_future(coro)
        self._running.add(running)
        running.add_done_callback(lambda t: self._on_done(t, name))
        return running

    def _on_done(self, task: asyncio.Task, name: str) -> None:
        self._running.discard(task)
        if task.cancelled():
            return
        exc: Optional[BaseException] = task.exception()
        if exc is not None:
            logger.error(
                "[Scheduler] Timer %s failed: %s", name, exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
