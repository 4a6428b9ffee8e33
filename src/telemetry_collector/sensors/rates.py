"""Per-second rates from cumulative kernel counters."""

from __future__ import annotations

import time
from typing import Callable


class RateTracker:
    """Turn cumulative counters into per-second rates between polls.

    The first observation of a key has nothing to diff against and yields
    ``None``.  A counter that goes backwards (wrap, device reset) also
    yields ``None`` and restarts the baseline.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._prev: dict[str, tuple[float, float]] = {}

    def rate(self, key: str, counter: float, now: float | None = None) -> float | None:
        now = self._clock() if now is None else now
        prev = self._prev.get(key)
        self._prev[key] = (counter, now)
        if prev is None:
            return None
        prev_counter, prev_time = prev
        dt = now - prev_time
        delta = counter - prev_counter
        if dt <= 0 or delta < 0:
            return None
        return delta / dt

    def forget(self, key: str) -> None:
        self._prev.pop(key, None)

    def retain(self, keys: set[str]) -> None:
        """Drop every tracked key not in ``keys``."""
        for key in set(self._prev) - keys:
            del self._prev[key]

    def __len__(self) -> int:
        return len(self._prev)
