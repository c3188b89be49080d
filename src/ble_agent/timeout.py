"""Scan timeout governor."""

import asyncio
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# Seconds a scan may run before the session gives up
DEFAULT_SCAN_TIMEOUT = 3.0

Scheduler = Callable[[float, Callable[[], None]], Any]


def loop_scheduler(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    """Schedule on the running event loop."""
    return asyncio.get_running_loop().call_later(delay, callback)


class TimeoutGovernor:
    """
    Holds at most one pending one-shot timer.

    Arming replaces any timer already pending. The returned handle of the
    scheduler only needs a ``cancel()`` method.
    """

    def __init__(self, duration: float = DEFAULT_SCAN_TIMEOUT, schedule: Optional[Scheduler] = None):
        if duration <= 0:
            raise ValueError(f"Timeout must be positive, got {duration}")
        self.duration = duration
        self._schedule = schedule or loop_scheduler
        self._handle: Any = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, on_fire: Callable[[], None]) -> None:
        """Start the timer; ``on_fire`` runs once if it is not disarmed first."""
        self.disarm()

        def fire() -> None:
            self._handle = None
            on_fire()

        self._handle = self._schedule(self.duration, fire)
        logger.debug(f"Scan timer armed ({self.duration}s)")

    def disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            logger.debug("Scan timer disarmed")
