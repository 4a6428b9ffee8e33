"""Main sampling loop with cooperative cancellation.

Orchestrates the hardware session, metric resolution, the process join
and the two buffered output streams.  SIGTERM/SIGINT only set a
cancellation event; the loop notices it at the next tick boundary, and
the exit path flushes both streams and closes the session whatever the
reason for leaving the loop.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .buffer import SampleBuffer
from .catalog import build_inventory, print_inventory
from .processes import FdinfoGpuMemory, GpuMemorySource, NvmlGpuMemory, ProcessMetricsJoiner
from .resolvers import ResolverRegistry
from .schema import REQUIRED_HARDWARE_FIELDS, MetricSample, ProcessSample, SchemaRegistry
from .session import HardwareSession, build_backends
from .writer import WRITERS, MetadataSidecar, StreamWriter, generate_basename

if TYPE_CHECKING:
    from .config import CollectorConfig

log = logging.getLogger(__name__)

PROGRESS_EVERY = 60  # rows


class SamplingLoop:
    """Drive the tick cadence for one collection session.

    ``clock`` is the monotonic clock used for scheduling and flush timing,
    ``wall_clock`` stamps samples, and ``sleep`` replaces the
    cancellable wait between ticks (tests advance a fake clock with it).
    """

    def __init__(
        self,
        session: HardwareSession,
        resolvers: ResolverRegistry,
        schema: SchemaRegistry,
        hardware_writer: StreamWriter,
        process_writer: StreamWriter | None = None,
        joiner: ProcessMetricsJoiner | None = None,
        sidecar: MetadataSidecar | None = None,
        interval: float = 1.0,
        flush_interval: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._session = session
        self._resolvers = resolvers
        self._schema = schema
        self._hardware_writer = hardware_writer
        self._process_writer = process_writer if joiner is not None else None
        self._joiner = joiner if process_writer is not None else None
        self._sidecar = sidecar
        self._interval = interval
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep

        self.hardware = SampleBuffer[MetricSample](hardware_writer, flush_interval, "hardware samples")
        self.processes = (
            SampleBuffer[ProcessSample](process_writer, flush_interval, "process samples")
            if self._process_writer is not None
            else None
        )

        self._cancelled = threading.Event()
        self._ticks = 0
        self._start = 0.0
        self._duration_s = 0.0
        self._last_timestamp = 0.0

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request a stop at the next tick boundary.  Terminal."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _signal_handler(self, signum: int, frame: object) -> None:
        self.cancel()

    def _install_signals(self) -> dict[int, Any]:
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous: dict[int, Any] = {}
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous[signum] = signal.signal(signum, self._signal_handler)
        return previous

    @staticmethod
    def _restore_signals(previous: dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self._cancelled.wait(seconds)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    @property
    def ticks(self) -> int:
        return self._ticks

    @property
    def progress_pct(self) -> float | None:
        """Percent of the requested duration elapsed; ``None`` when unbounded."""
        if self._duration_s <= 0:
            return None
        elapsed = self._clock() - self._start
        return round(min(100.0, elapsed / self._duration_s * 100.0), 1)

    def _print_progress(self) -> None:
        elapsed = self._clock() - self._start
        line = f"  [{self._ticks} rows, {elapsed:.0f}s elapsed"
        pct = self.progress_pct
        if pct is not None:
            line += f", {pct:.0f}%"
        print(line + "]", file=sys.stderr)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def _timestamp(self) -> float:
        # wall clock steps backwards are clamped so timestamps never decrease
        now = max(self._wall_clock(), self._last_timestamp)
        self._last_timestamp = now
        return now

    def _tick(self) -> None:
        snapshot = self._session.refresh()
        self._resolvers.sync(snapshot)
        fields = self._resolvers.resolve_all(snapshot)
        added = self._schema.observe(fields)
        if added and self._ticks > 0:
            log.info("Schema grew by %d field(s): %s", len(added), ", ".join(added))

        timestamp = self._timestamp()
        self.hardware.append(MetricSample(timestamp=timestamp, fields=fields))

        if self._joiner is not None and self.processes is not None:
            self.processes.extend(self._joiner.sample(timestamp))

    def _flush_if_due(self, now: float) -> None:
        self.hardware.flush_if_due(now)
        if self.processes is not None:
            self.processes.flush_if_due(now)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _open_outputs(self) -> None:
        self._hardware_writer.open()
        streams: dict[str, Path] = {"hardware": self._hardware_writer.path}
        if self._process_writer is not None:
            self._process_writer.open()
            streams["processes"] = self._process_writer.path
        if self._joiner is not None:
            self._joiner.open()
        if self._sidecar is not None:
            self._sidecar.write(streams)

    def _final_flush(self) -> None:
        buffers = [b for b in (self.hardware, self.processes) if b is not None]
        for buf in buffers:
            with buf.lock:
                if not buf.flush_now():
                    log.error("Exit-time flush failed; %d sample(s) were not persisted", buf.pending)

    def _close_outputs(self) -> None:
        if self._joiner is not None:
            self._joiner.close()
        self._hardware_writer.close()
        if self._process_writer is not None:
            self._process_writer.close()
        if self._sidecar is not None:
            counts = {"hardware": self._hardware_writer.row_count}
            if self._process_writer is not None:
                counts["processes"] = self._process_writer.row_count
            self._sidecar.finalize(self._schema.fields, counts)

    def run(self, duration: float = 0) -> int:
        """Sample until ``duration`` minutes have elapsed or until cancelled.

        ``duration == 0`` runs until cancelled.  Returns the number of ticks
        sampled.

        Raises:
            HardwareSessionError: the hardware session could not be opened.
                No output file has been created in that case.
        """
        self._duration_s = duration * 60.0
        self._session.open()

        previous_handlers: dict[int, Any] = {}
        try:
            previous_handlers = self._install_signals()
            self._open_outputs()

            # discovery refresh: inventory, GPU resolvers, rate baselines
            snapshot = self._session.refresh()
            print_inventory(build_inventory(snapshot))
            self._resolvers.sync(snapshot)

            print(f"\nCollecting to {self._hardware_writer.path}", file=sys.stderr)
            if self._duration_s > 0:
                print(f"  Duration: {duration:g} min", file=sys.stderr)
            print("  Press Ctrl+C to stop.\n", file=sys.stderr)

            self._start = self._clock()
            self.hardware.reset_timer(self._start)
            if self.processes is not None:
                self.processes.reset_timer(self._start)
            next_tick = self._start

            while not self.cancelled:
                self._tick()
                self._ticks += 1
                if self._ticks % PROGRESS_EVERY == 0:
                    self._print_progress()

                # Sleep until next tick (compensate for sampling time)
                next_tick += self._interval
                delay = next_tick - self._clock()
                if delay > 0:
                    self._wait(delay)
                else:
                    missed = int(-delay / self._interval)
                    if missed > 0:
                        log.warning("Missed %d tick(s), resynchronizing", missed)
                    next_tick = self._clock()

                if self.cancelled:
                    print("\nCancelled.", file=sys.stderr)
                    break

                now = self._clock()
                self._flush_if_due(now)

                if self._duration_s > 0 and now - self._start >= self._duration_s:
                    print(f"\nDuration limit reached ({duration:g} min).", file=sys.stderr)
                    break
        finally:
            try:
                self._final_flush()
                self._close_outputs()
            finally:
                self._session.close()
                self._restore_signals(previous_handlers)
            print(
                f"\nDone. {self._hardware_writer.row_count} rows "
                f"({self._hardware_writer.path})",
                file=sys.stderr,
            )
        return self._ticks


def _gpu_memory_sources(config: CollectorConfig) -> list[GpuMemorySource]:
    sources: list[GpuMemorySource] = []
    if config.use_nvml:
        sources.append(NvmlGpuMemory())
    sources.append(FdinfoGpuMemory(config.proc_root))
    return sources


def run_collector(config: CollectorConfig) -> int:
    """Build a session from ``config`` and run it; return the tick count."""
    schema = SchemaRegistry(REQUIRED_HARDWARE_FIELDS)
    writer_cls = WRITERS[config.output_format]
    base = config.output_dir / generate_basename()

    hardware_writer = writer_cls(Path(f"{base}.hardware{writer_cls.suffix}"), lambda: schema.fields)
    process_writer = None
    joiner = None
    if config.collect_processes:
        process_writer = writer_cls(
            Path(f"{base}.processes{writer_cls.suffix}"), lambda: ProcessSample.COLUMNS
        )
        joiner = ProcessMetricsJoiner(gpu_sources=_gpu_memory_sources(config))

    loop = SamplingLoop(
        session=HardwareSession(build_backends(config), poll_timeout=config.poll_timeout),
        resolvers=ResolverRegistry(),
        schema=schema,
        hardware_writer=hardware_writer,
        process_writer=process_writer,
        joiner=joiner,
        sidecar=MetadataSidecar(Path(f"{base}.meta.json"), config),
        interval=config.interval,
        flush_interval=config.flush_interval,
    )
    return loop.run(config.duration)
