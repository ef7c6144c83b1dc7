"""One-shot, cancellable wake-up timers on the asyncio event loop."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

LOGGER = logging.getLogger("amm_volume_bot.engine.scheduler")

WakeCallback = Callable[[], Awaitable[None]]


class WakeHandle:
    """Handle for a single armed wake-up."""

    def __init__(self, when: datetime, task: asyncio.Task | None = None) -> None:
        self.when = when
        self._task = task
        self._cancelled = False
        self._fired = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def fired(self) -> bool:
        return self._fired

    def cancel(self) -> None:
        self._cancelled = True
        # A handle whose callback is already running is only marked; the
        # callback itself may be the one arming the replacement.
        if self._task is not None and not self._task.done() and not self._fired:
            self._task.cancel()


class WakeScheduler:
    """Arm coroutine callbacks for an absolute instant.

    The callback runs as its own task once the instant has passed; a callback
    may arm the next wake-up itself.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handles: set[WakeHandle] = set()

    def schedule_at(self, when: datetime, callback: WakeCallback) -> WakeHandle:
        handle = WakeHandle(when)
        task = asyncio.get_running_loop().create_task(
            self._run_at(handle, callback), name=f"wake@{when.isoformat()}"
        )
        handle._task = task
        self._handles.add(handle)
        task.add_done_callback(lambda _: self._handles.discard(handle))
        return handle

    async def _run_at(self, handle: WakeHandle, callback: WakeCallback) -> None:
        delay = (handle.when - self._clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        if handle.cancelled:
            return
        handle._fired = True
        try:
            await callback()
        except Exception:
            LOGGER.exception("Wake callback scheduled for %s failed", handle.when)

    def cancel_all(self) -> None:
        """Cancel every pending wake-up, including one whose callback is running."""
        for handle in list(self._handles):
            handle.cancel()
            if handle._task is not None and not handle._task.done():
                handle._task.cancel()

    @property
    def pending(self) -> int:
        return len(self._handles)
