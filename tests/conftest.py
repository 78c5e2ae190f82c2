"""Shared fixtures: deterministic clock/scheduler and synthetic frames."""

import heapq
import itertools
from datetime import datetime, timedelta
from io import BytesIO
from typing import Callable, List, Tuple

import numpy as np
import pytest
from PIL import Image


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 3, 14, 12, 0, 0)):
        self._start = start
        self._offset = 0.0

    def time(self) -> float:
        return self._start.timestamp() + self._offset

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._offset)

    def advance(self, seconds: float) -> None:
        self._offset += seconds


class ManualHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler driven by a ManualClock; jobs fire in due order on advance()."""

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self._jobs: List[Tuple[float, int, ManualHandle, Callable[[], None]]] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle()
        heapq.heappush(self._jobs, (self.clock.time() + delay, next(self._seq), handle, callback))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle, _ in self._jobs if not handle.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.clock.time() + seconds
        while self._jobs and self._jobs[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._jobs)
            self.clock.advance(max(0.0, due - self.clock.time()))
            if not handle.cancelled:
                callback()
        self.clock.advance(max(0.0, target - self.clock.time()))


def encode_png(image: np.ndarray) -> bytes:
    """Encode an RGB or grayscale array as PNG bytes."""
    buf = BytesIO()
    Image.fromarray(image).save(buf, format="PNG")
    return buf.getvalue()


def block_pattern(seed: int, scale: int = 8, grid: int = 8) -> np.ndarray:
    """Grayscale image made of a random grid x grid pattern upscaled by ``scale``."""
    rng = np.random.default_rng(seed)
    cells = rng.choice([20, 230], size=(grid, grid)).astype(np.uint8)
    return np.kron(cells, np.ones((scale, scale), dtype=np.uint8))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture
def png():
    return encode_png


@pytest.fixture
def pattern():
    return block_pattern
