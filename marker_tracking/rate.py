"""Exponentially smoothed throughput meter shared by every pipeline stage."""

from __future__ import annotations

import time
from typing import Callable


class RateTracker:
    """Frames-per-second estimate, smoothed as ``0.9 * old + 0.1 * new``.

    Each stage owns its own tracker; ``update()`` is called once per processed
    frame and ``reset()`` whenever the stage is paused.
    """

    SMOOTHING = 0.9

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.last_timestamp = clock()
        self.smoothed_rate = 0.0

    def _elapsed(self) -> float:
        now = self._clock()
        elapsed = now - self.last_timestamp
        self.last_timestamp = now
        return elapsed

    def update(self) -> float:
        elapsed = self._elapsed()
        if elapsed > 0:
            instant = 1.0 / elapsed
            self.smoothed_rate = self.SMOOTHING * self.smoothed_rate + (1.0 - self.SMOOTHING) * instant
        return self.smoothed_rate

    def reset(self) -> None:
        self._elapsed()
        self.smoothed_rate = 0.0

    @property
    def rate(self) -> float:
        return self.smoothed_rate
