"""
Cancelable periodic background tasks.

Each governance component owns its timers (sweeps, keep-alive ticks,
stream heartbeats) as PeriodicTask instances so that shutting a component
down never leaves background work running.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable

from techanal_engine.logging import get_logger

logger = get_logger(__name__)

PeriodicCallback = Callable[[], None] | Callable[[], Awaitable[None]]


class PeriodicTask:
    """
    Runs a callback every ``interval_s`` seconds on the running event loop.

    The first call happens one interval after start. Exceptions raised by
    the callback are logged and do not stop the loop.
    """

    def __init__(self, name: str, interval_s: float, callback: PeriodicCallback):
        if interval_s <= 0:
            raise ValueError(f"interval_s must be positive, got {interval_s}")
        self._name = name
        self._interval_s = interval_s
        self._callback = callback
        self._task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """
        Start the task on the running loop.

        Returns:
            True if the task is running after the call, False when no event
            loop is running in this thread.
        """
        if self.running:
            return True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, periodic task %s not started", self._name)
            return False
        self._task = loop.create_task(self._run(), name=f"periodic:{self._name}")
        return True

    def cancel(self) -> None:
        """
        Request cancellation without waiting for it.

        Safe to call from a thread other than the one running the loop.
        """
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        loop = task.get_loop()
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            task.cancel()
            return
        try:
            loop.call_soon_threadsafe(task.cancel)
        except RuntimeError:
            # Loop already closed; the task died with it
            pass

    async def stop(self) -> None:
        """Cancel the task and wait for it to finish."""
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Periodic task %s failed", self._name)
