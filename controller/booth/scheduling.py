"""Cancellable delayed coroutines on the running event loop."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Run ``callback`` after ``delay`` seconds unless cancelled first.

    Teardown code calls :meth:`cancel`, which cancels and awaits the underlying
    task so nothing scheduled can fire afterwards.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[], Awaitable[Any]],
        *,
        name: str = "scheduled-task",
    ) -> None:
        self.delay = max(0.0, float(delay))
        self.name = name
        self._callback = callback
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "ScheduledTask":
        if self.pending:
            logger.debug("%s already scheduled; ignoring start", self.name)
            return self
        self._task = asyncio.create_task(self._run(), name=self.name)
        return self

    async def cancel(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Cancelling ourselves from inside the callback would abort the caller.
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Error while cancelling %s: %s", self.name, e)

    async def wait(self) -> None:
        """Wait for the task to finish, whether it ran, failed or was cancelled."""
        task = self._task
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def _run(self) -> None:
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            await self._callback()
        except asyncio.CancelledError:
            logger.debug("%s cancelled", self.name)
            raise
        except Exception:
            logger.exception("%s crashed", self.name)


__all__ = ["ScheduledTask"]
