"""Clock and timer abstractions shared by the pipeline components."""

import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from loguru import logger


class TimerHandle(Protocol):
    """Handle returned by a scheduler for a pending callback."""
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Source of wall-clock time."""
    def time(self) -> float: ...
    def now(self) -> datetime: ...


class Scheduler(Protocol):
    """Runs callbacks after a delay in seconds."""
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class SystemClock:
    """Clock backed by the host's wall clock."""

    def time(self) -> float:
        return time.time()

    def now(self) -> datetime:
        return datetime.now()


class ThreadScheduler:
    """Scheduler backed by daemon ``threading.Timer`` instances."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.daemon = True
        timer.start()
        return timer


def seconds_until_midnight(now: datetime) -> float:
    """Seconds from ``now`` until the next local midnight."""
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (tomorrow - now).total_seconds()


class RepeatingTimer:
    """Re-arming timer: the next run is scheduled even if the callback raises."""

    def __init__(self, scheduler: Scheduler, interval_fn: Callable[[], float],
                 callback: Callable[[], None], name: str = "timer") -> None:
        """Initialize repeating timer.

        Args:
            scheduler: Scheduler used to arm each run
            interval_fn: Returns the delay until the next run (re-evaluated on every arm)
            callback: Work to run on every fire
            name: Label used in log messages
        """
        self.scheduler = scheduler
        self.interval_fn = interval_fn
        self.callback = callback
        self.name = name
        self._handle: Optional[TimerHandle] = None
        self._lock = threading.Lock()
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        with self._lock:
            if self._active:
                return
            self._active = True
            self._arm()

    def cancel(self) -> None:
        with self._lock:
            self._active = False
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None

    def _arm(self) -> None:
        delay = self.interval_fn()
        self._handle = self.scheduler.call_later(delay, self._fire)
        logger.debug(f"Timer '{self.name}' armed for {delay:.1f}s")

    def _fire(self) -> None:
        if not self._active:
            return
        try:
            self.callback()
        except Exception as e:
            logger.error(f"Timer '{self.name}' callback failed: {e}")
        finally:
            with self._lock:
                if self._active:
                    self._arm()
