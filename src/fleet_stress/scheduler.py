"""
Cancellable fixed-rate timers for the cooperative fleet loop.

The controller's control tick and every bot's tick loop are ``PeriodicTask``
instances running on one asyncio event loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Invoke ``callback`` every ``interval`` seconds until cancelled.

    Scheduling is deadline based: when a callback overruns its slot the missed
    slots are dropped instead of being replayed back to back. Callback errors
    are logged and the timer keeps running.

    ``cancel()`` is synchronous. Once it returns the callback is never invoked
    again, even if the next slot is already due.

    With ``pass_time`` the callback receives the slot time on the loop clock.
    Consecutive slot times differ by exactly ``interval`` (the float sum), so a
    gate computing ``last + interval`` sees the next slot as due, never early.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[..., Any],
        name: str = "periodic-task",
        pass_time: bool = False,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval
        self.name = name
        self.invocations = 0
        self._callback = callback
        self._pass_time = pass_time
        self._task: asyncio.Task | None = None
        self._cancelled = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._cancelled and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> PeriodicTask:
        """Schedule the timer on the running event loop."""
        if self._cancelled:
            raise RuntimeError(f"Periodic task '{self.name}' was cancelled")
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name=self.name
            )
        return self

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True

        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # Cancelling from inside our own callback: the loop exits on the flag
        if task is not current:
            task.cancel()

    async def wait_closed(self) -> None:
        """Wait for the underlying asyncio task to finish after cancellation."""
        if self._task is None:
            return
        await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while not self._cancelled:
            deadline += self.interval
            now = loop.time()
            if deadline < now:
                deadline = now
            await asyncio.sleep(deadline - now)
            if self._cancelled:
                break

            try:
                result = self._callback(deadline) if self._pass_time else self._callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Periodic task '{self.name}' callback failed")
            self.invocations += 1
