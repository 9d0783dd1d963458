"""Stall watchdog: fires when no frame arrives within a quiet period."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

_logger = logging.getLogger(__name__)


class StallWatchdog:
    """Re-armable one-shot timer on the running event loop.

    ``arm()`` (re)starts the countdown; ``disarm()`` stops it.  When the
    countdown expires *on_stall* is called once, from a loop callback.
    """

    def __init__(self, timeout: float, on_stall: Callable[[], None]) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout
        self._on_stall = on_stall
        self._handle: asyncio.TimerHandle | None = None
        self._fired = False

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def fired(self) -> bool:
        return self._fired

    def arm(self) -> None:
        """Start or restart the countdown.  No-op once fired."""
        if self._fired:
            return
        self.disarm()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    def disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._fired = True
        _logger.warning("No frame received for %.1fs", self.timeout)
        self._on_stall()
