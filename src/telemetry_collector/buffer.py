"""In-memory sample buffer with a time-based flush policy."""

from __future__ import annotations

import logging
import threading
from typing import Generic, Protocol, Sequence, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class BatchWriter(Protocol[T]):
    """Anything that can durably persist a batch of samples."""

    def write_batch(self, samples: Sequence[T]) -> None: ...


class SampleBuffer(Generic[T]):
    """Accumulate samples and hand them to a writer in batches.

    A flush is due when ``now - last_flush >= flush_interval``.  A flush
    that raises ``OSError`` leaves every pending sample in place and does
    not advance ``last_flush``, so the next due check retries it.  A
    successful flush removes exactly the samples it wrote.

    All state changes happen under ``lock``; callers that need several
    operations to be atomic (the exit-time flush of both streams) can hold
    it themselves, it is re-entrant.
    """

    def __init__(self, writer: BatchWriter[T], flush_interval: float, name: str = "samples") -> None:
        self._writer = writer
        self._interval = flush_interval
        self._name = name
        self._pending: list[T] = []
        self._last_flush = 0.0
        self._failures = 0
        self.lock = threading.RLock()

    @property
    def pending(self) -> int:
        with self.lock:
            return len(self._pending)

    @property
    def last_flush(self) -> float:
        return self._last_flush

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def reset_timer(self, now: float) -> None:
        """Start the flush interval from ``now`` (call once before the first tick)."""
        with self.lock:
            self._last_flush = now

    def append(self, sample: T) -> None:
        with self.lock:
            self._pending.append(sample)

    def extend(self, samples: Sequence[T]) -> None:
        with self.lock:
            self._pending.extend(samples)

    def flush_if_due(self, now: float) -> bool:
        """Flush when the interval has elapsed; return True if rows were written."""
        with self.lock:
            if now - self._last_flush < self._interval:
                return False
            if self._flush():
                self._last_flush = now
                return True
            return False

    def flush_now(self) -> bool:
        """Flush unconditionally; a no-op returning True when nothing is pending."""
        with self.lock:
            return self._flush()

    def _flush(self) -> bool:
        if not self._pending:
            return True
        batch = list(self._pending)
        try:
            self._writer.write_batch(batch)
        except OSError as exc:
            self._failures += 1
            log.error(
                "Failed to flush %d %s (attempt %d), keeping them for retry: %s",
                len(batch),
                self._name,
                self._failures,
                exc,
            )
            return False
        del self._pending[: len(batch)]
        self._failures = 0
        return True
