from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("sref_proxy.scheduled_task")


class DebouncedTask:
    """Single-slot delayed coroutine.

    Every ``schedule()`` call pushes the run back to ``delay`` seconds from
    now, so a burst of calls collapses into one execution.
    """

    def __init__(self, action: Callable[[], Awaitable[None]], *, delay: float, name: str = "debounced-task") -> None:
        self._action = action
        self._delay = max(0.0, float(delay))
        self._name = name
        self._task: Optional[asyncio.Task[None]] = None
        self._run_lock = asyncio.Lock()

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = asyncio.get_running_loop().create_task(self._delayed(), name=self._name)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def flush(self) -> None:
        """Run the action now if a run is pending."""
        if not self.pending:
            return
        self.cancel()
        await self._run()

    async def _delayed(self) -> None:
        await asyncio.sleep(self._delay)
        # Once started, a run finishes even if rescheduled meanwhile.
        await asyncio.shield(self._run())

    async def _run(self) -> None:
        async with self._run_lock:
            try:
                await self._action()
            except Exception as exc:  # noqa: BLE001 - a failed run must not kill later runs
                logger.warning("%s failed: %s", self._name, exc, exc_info=True)


__all__ = ["DebouncedTask"]
