from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from ...errors import InactivityTimeoutError

logger = logging.getLogger(__name__)


class InactivityWatchdog:
    """
    Resettable inactivity timer for one run.

    `arm()` starts the window, every `reset()` (one per output event) restarts
    it, and `wait()` raises `InactivityTimeoutError` once the window elapses
    without a reset. A timeout of zero or less disables the watchdog.
    """

    def __init__(
        self,
        timeout_sec: Optional[float],
        on_timeout: Optional[Callable[[], None]] = None,
    ) -> None:
        self.timeout_sec = float(timeout_sec or 0.0)
        self._on_timeout = on_timeout
        self._timer: asyncio.TimerHandle | None = None
        self._fired: asyncio.Future[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def enabled(self) -> bool:
        return self.timeout_sec > 0

    @property
    def fired(self) -> bool:
        return self._fired is not None and self._fired.done() and not self._fired.cancelled()

    def arm(self) -> None:
        if not self.enabled or self._fired is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._fired = self._loop.create_future()
        self._schedule()

    def reset(self) -> None:
        if self._fired is None or self._fired.done():
            return
        if self._timer is not None:
            self._timer.cancel()
        self._schedule()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._fired is None:
            return
        if self._fired.done():
            if not self._fired.cancelled():
                # Mark the timeout as retrieved when nobody raced on it.
                self._fired.exception()
            return
        self._fired.cancel()

    async def wait(self) -> None:
        if self._fired is None:
            raise RuntimeError("watchdog is not armed")
        await asyncio.shield(self._fired)

    def _schedule(self) -> None:
        assert self._loop is not None
        self._timer = self._loop.call_later(self.timeout_sec, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._fired is None or self._fired.done():
            return
        logger.warning("No output received for %gs", self.timeout_sec)
        self._fired.set_exception(InactivityTimeoutError(self.timeout_sec))
        if self._on_timeout is not None:
            self._on_timeout()
