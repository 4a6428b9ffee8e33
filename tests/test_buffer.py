"""Tests for SampleBuffer and its flush policy."""

from __future__ import annotations

import logging
import threading
from typing import Sequence

import pytest

from telemetry_collector.buffer import SampleBuffer


class RecordingWriter:
    """Collects batches; fails while ``failing`` is set."""

    def __init__(self) -> None:
        self.batches: list[list[int]] = []
        self.failing = False
        self.attempts = 0

    def write_batch(self, samples: Sequence[int]) -> None:
        self.attempts += 1
        if self.failing:
            raise OSError(28, "No space left on device")
        self.batches.append(list(samples))


@pytest.fixture()
def writer() -> RecordingWriter:
    return RecordingWriter()


@pytest.fixture()
def buffer(writer: RecordingWriter) -> SampleBuffer[int]:
    buf = SampleBuffer[int](writer, flush_interval=15.0)
    buf.reset_timer(0.0)
    return buf


class TestFlushIfDue:
    def test_not_due(self, buffer: SampleBuffer[int], writer: RecordingWriter) -> None:
        buffer.append(1)
        assert buffer.flush_if_due(14.9) is False
        assert writer.batches == []
        assert buffer.pending == 1

    def test_due(self, buffer: SampleBuffer[int], writer: RecordingWriter) -> None:
        buffer.extend([1, 2, 3])
        assert buffer.flush_if_due(15.0) is True
        assert writer.batches == [[1, 2, 3]]
        assert buffer.pending == 0
        assert buffer.last_flush == 15.0

    def test_interval_restarts_after_flush(self, buffer: SampleBuffer[int], writer: RecordingWriter) -> None:
        buffer.append(1)
        buffer.flush_if_due(15.0)
        buffer.append(2)
        assert buffer.flush_if_due(29.0) is False
        assert buffer.flush_if_due(30.0) is True
        assert writer.batches == [[1], [2]]


class TestFailedFlush:
    def test_keeps_pending(
        self,
        buffer: SampleBuffer[int],
        writer: RecordingWriter,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        buffer.extend([1, 2])
        writer.failing = True
        with caplog.at_level(logging.ERROR, logger="telemetry_collector.buffer"):
            assert buffer.flush_if_due(15.0) is False
        assert buffer.pending == 2
        assert buffer.last_flush == 0.0
        assert buffer.consecutive_failures == 1
        assert "2 samples" in caplog.text

    def test_retried_on_next_check(self, buffer: SampleBuffer[int], writer: RecordingWriter) -> None:
        buffer.extend([1, 2])
        writer.failing = True
        buffer.flush_if_due(15.0)
        buffer.append(3)
        writer.failing = False
        # still due: last_flush did not advance
        assert buffer.flush_if_due(16.0) is True
        assert writer.batches == [[1, 2, 3]]
        assert buffer.consecutive_failures == 0

    def test_flush_now_failure(self, buffer: SampleBuffer[int], writer: RecordingWriter) -> None:
        buffer.append(1)
        writer.failing = True
        assert buffer.flush_now() is False
        assert buffer.pending == 1


class TestFlushNow:
    def test_unconditional(self, buffer: SampleBuffer[int], writer: RecordingWriter) -> None:
        buffer.append(1)
        assert buffer.flush_now() is True
        assert writer.batches == [[1]]

    def test_empty_is_noop(self, buffer: SampleBuffer[int], writer: RecordingWriter) -> None:
        assert buffer.flush_now() is True
        assert writer.attempts == 0


class TestNoLossNoDuplication:
    def test_every_sample_written_once(self, buffer: SampleBuffer[int], writer: RecordingWriter) -> None:
        for tick in range(1, 101):
            buffer.append(tick)
            # fail every seventh due flush
            writer.failing = tick % 7 == 0
            buffer.flush_if_due(float(tick))
        writer.failing = False
        buffer.flush_now()
        written = [s for batch in writer.batches for s in batch]
        assert written == list(range(1, 101))

    def test_concurrent_append_and_flush(self, writer: RecordingWriter) -> None:
        buffer = SampleBuffer[int](writer, flush_interval=0.0)
        done = threading.Event()

        def flusher() -> None:
            while not done.is_set():
                buffer.flush_now()

        thread = threading.Thread(target=flusher)
        thread.start()
        try:
            for i in range(5000):
                buffer.append(i)
        finally:
            done.set()
            thread.join()
        buffer.flush_now()
        written = [s for batch in writer.batches for s in batch]
        assert written == list(range(5000))
