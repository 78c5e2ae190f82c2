"""Named event channels used to fan pipeline signals out to the host UI."""

import threading
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

from loguru import logger


class Events:
    """Channel names emitted by the pipeline components."""
    FRAME_PROCESSED = "frame-processed"
    INSIGHT = "insight"
    GUIDANCE = "guidance"
    INSTANT_ACTION = "instant-action"
    INSTANT_ERROR = "instant-error"
    PARTIAL_UPDATE = "partial-update"
    SHORTCUTS = "shortcuts"
    BUDGET_WARNING = "budget-warning"
    BUDGET_LOW = "budget-low"
    BUDGET_CRITICAL = "budget-critical"
    COST_UPDATE = "cost-update"
    CONFIG_UPDATED = "config-updated"
    AUTOMATION_DETECTED = "automation-detected"
    REPETITIVE_PATTERN = "repetitive-pattern"
    CACHE_HIT = "cache-hit"
    CACHE_EVICTED = "cache-evicted"
    CACHE_STORED = "cache-stored"
    CACHE_IMPORTED = "cache-imported"
    DAILY_RESET = "daily-reset"
    SKIPPED = "skipped"
    ERROR = "error"
    STARTED = "started"
    STOPPED = "stopped"


Listener = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe hub.

    Listeners run on the emitting thread. A failing listener is logged and
    the remaining listeners still receive the event.
    """

    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, callback: Listener) -> Listener:
        """Register a listener; returns it so it can be used as a decorator."""
        with self._lock:
            self._listeners[event].append(callback)
        return callback

    def off(self, event: str, callback: Listener) -> None:
        with self._lock:
            if callback in self._listeners.get(event, []):
                self._listeners[event].remove(callback)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, []))

    def emit(self, event: str, payload: Any = None) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Listener for '{event}' raised: {e}")
