"""Logging setup and pipeline telemetry."""

import json
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from loguru import logger


def init_logger(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Initialize global logger configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for log output
    """
    logger.remove()

    logger.add(
        sink=sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        colorize=True
    )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            sink=str(log_file),
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            rotation="10 MB",
            retention="30 days"
        )

    logger.info(f"Logger initialized with level: {level}")


class TelemetryTracker:
    """Counters and per-stage timings for the capture pipeline.

    Safe to share between the capture thread and callers of ``stats()``.
    """

    max_samples = 1000

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.timings: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def increment(self, counter_name: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[counter_name] = self.counters.get(counter_name, 0) + amount

    @contextmanager
    def timed(self, stage: str) -> Iterator[None]:
        """Record the wall time of the wrapped block under ``stage``."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(stage, time.perf_counter() - started)

    def record_timing(self, stage: str, duration: float) -> None:
        with self._lock:
            samples = self.timings.setdefault(stage, [])
            samples.append(duration)
            # Bounded for long-running capture loops
            if len(samples) > self.max_samples:
                del samples[:self.max_samples // 2]

    def get_stats(self) -> Dict[str, Any]:
        """Counters plus avg/min/max/count per timed stage."""
        with self._lock:
            stats: Dict[str, Any] = {"counters": dict(self.counters)}
            timing_avgs = {
                stage: {
                    "avg": sum(durations) / len(durations),
                    "min": min(durations),
                    "max": max(durations),
                    "count": len(durations),
                }
                for stage, durations in self.timings.items() if durations
            }
        if timing_avgs:
            stats["timings"] = timing_avgs
        return stats

    def log_stats(self) -> None:
        logger.info(f"Pipeline telemetry: {json.dumps(self.get_stats(), indent=2)}")
