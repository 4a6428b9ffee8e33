"""Per-process samples: psutil counters joined with GPU memory usage.

Two independent sources are read on every tick:

(a) per-process counters keyed by pid (CPU %, resident memory, I/O
    rates), from psutil;
(b) GPU memory counter *instances* whose names encode the owning pid as
    ``pid_<pid>_<source...>``, from NVML and from DRM fdinfo.

The join is a left join on (a): one ``ProcessSample`` per pid in (a),
GPU fields summed over every matching instance in (b) and zero when none
matches.  Pids that only appear in (b) are dropped.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Iterable, Protocol

import psutil
import pynvml

from .schema import ProcessSample
from .sensors.fdinfo import scan_clients
from .sensors.rates import RateTracker

log = logging.getLogger(__name__)

_MIB = 1024.0 * 1024.0

_INSTANCE_PID = re.compile(r"^pid_(\d+)_")


@dataclass(frozen=True)
class ProcessCounters:
    """Source (a): one process's counters on one tick."""

    pid: int
    name: str
    cpu_pct: float  # share of the whole machine
    ram_mb: float
    io_read_bps: float
    io_write_bps: float


@dataclass(frozen=True)
class GpuMemoryInstance:
    """Source (b): one GPU memory counter instance."""

    name: str  # pid_<pid>_<source...>
    dedicated_mb: float
    shared_mb: float


def instance_pid(name: str) -> int | None:
    """Extract the owning pid from an instance name."""
    match = _INSTANCE_PID.match(name)
    return int(match.group(1)) if match else None


class ProcessCounterSource:
    """Per-process CPU, memory and I/O counters through psutil.

    ``psutil.Process.cpu_percent`` and the I/O rates are deltas, so
    ``Process`` objects are cached across ticks; a process seen for the
    first time reports 0 CPU and 0 I/O.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._procs: dict[int, psutil.Process] = {}
        self._rates = RateTracker(clock)
        self._cpu_count = psutil.cpu_count(logical=True) or 1

    def _process(self, pid: int) -> psutil.Process:
        proc = self._procs.get(pid)
        if proc is None or not proc.is_running():
            proc = psutil.Process(pid)
            proc.cpu_percent(interval=None)  # baseline
            self._procs[pid] = proc
            self._rates.forget(f"{pid}:read")
            self._rates.forget(f"{pid}:write")
        return proc

    def _io_rates(self, pid: int, proc: psutil.Process) -> tuple[float, float]:
        if not hasattr(proc, "io_counters"):
            return 0.0, 0.0
        try:
            io = proc.io_counters()
        except (psutil.AccessDenied, NotImplementedError):
            return 0.0, 0.0
        read = self._rates.rate(f"{pid}:read", io.read_bytes)
        write = self._rates.rate(f"{pid}:write", io.write_bytes)
        return round(read or 0.0, 1), round(write or 0.0, 1)

    def sample(self) -> dict[int, ProcessCounters]:
        counters: dict[int, ProcessCounters] = {}
        alive: set[int] = set()
        for pid in psutil.pids():
            try:
                proc = self._process(pid)
                with proc.oneshot():
                    name = proc.name()
                    cpu = proc.cpu_percent(interval=None) / self._cpu_count
                    ram = proc.memory_info().rss / _MIB
                    read_bps, write_bps = self._io_rates(pid, proc)
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                continue
            except psutil.AccessDenied:
                alive.add(pid)
                continue
            alive.add(pid)
            counters[pid] = ProcessCounters(
                pid=pid,
                name=name,
                cpu_pct=round(cpu, 2),
                ram_mb=round(ram, 1),
                io_read_bps=read_bps,
                io_write_bps=write_bps,
            )

        for pid in set(self._procs) - alive:
            del self._procs[pid]
            self._rates.forget(f"{pid}:read")
            self._rates.forget(f"{pid}:write")
        return counters


class GpuMemorySource(Protocol):
    """Protocol for per-process GPU memory sources."""

    name: str

    def open(self) -> None: ...

    def sample(self) -> list[GpuMemoryInstance]: ...

    def close(self) -> None: ...


class NvmlGpuMemory:
    """Per-process memory on NVIDIA GPUs.

    Compute and graphics contexts of one process on one device are
    reported separately by NVML and usually with the same figure, so the
    larger of the two is kept per (device, pid).
    """

    name: ClassVar[str] = "nvml"

    def __init__(self) -> None:
        self._handles: list[Any] = []
        self._initialized = False

    def open(self) -> None:
        pynvml.nvmlInit()
        self._initialized = True
        self._handles = [
            pynvml.nvmlDeviceGetHandleByIndex(i) for i in range(pynvml.nvmlDeviceGetCount())
        ]

    def close(self) -> None:
        self._handles = []
        if self._initialized:
            self._initialized = False
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError as exc:
                log.debug("nvmlShutdown failed: %s", exc)

    def sample(self) -> list[GpuMemoryInstance]:
        instances: list[GpuMemoryInstance] = []
        for index, handle in enumerate(self._handles):
            used: dict[int, int] = {}
            for query in (
                pynvml.nvmlDeviceGetComputeRunningProcesses,
                pynvml.nvmlDeviceGetGraphicsRunningProcesses,
            ):
                try:
                    procs = query(handle)
                except pynvml.NVMLError_NotSupported:
                    continue
                for proc in procs:
                    # usedGpuMemory is None when the driver withholds it
                    amount = proc.usedGpuMemory or 0
                    used[proc.pid] = max(used.get(proc.pid, 0), amount)
            instances.extend(
                GpuMemoryInstance(
                    name=f"pid_{pid}_nvml_{index}",
                    dedicated_mb=round(amount / _MIB, 1),
                    shared_mb=0.0,
                )
                for pid, amount in used.items()
            )
        return instances


class FdinfoGpuMemory:
    """Per-process memory on AMD/Intel GPUs from DRM fdinfo."""

    name: ClassVar[str] = "drm-fdinfo"

    def __init__(self, proc_root: str = "/proc") -> None:
        self._proc_root = proc_root

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def sample(self) -> list[GpuMemoryInstance]:
        return [
            GpuMemoryInstance(
                name=f"pid_{client.pid}_drm_{client.pdev}_{client.client_id}",
                dedicated_mb=round(client.dedicated_bytes / _MIB, 1),
                shared_mb=round(client.shared_bytes / _MIB, 1),
            )
            for client in scan_clients(self._proc_root)
        ]


def join(
    counters: dict[int, ProcessCounters],
    instances: Iterable[GpuMemoryInstance],
    timestamp: float,
) -> list[ProcessSample]:
    """Left-join process counters with GPU memory instances by pid."""
    dedicated: dict[int, float] = {}
    shared: dict[int, float] = {}
    for inst in instances:
        pid = instance_pid(inst.name)
        if pid is None:
            log.debug("Ignoring GPU memory instance without a pid: %s", inst.name)
            continue
        dedicated[pid] = dedicated.get(pid, 0.0) + inst.dedicated_mb
        shared[pid] = shared.get(pid, 0.0) + inst.shared_mb

    return [
        ProcessSample(
            timestamp=timestamp,
            process_name=c.name,
            pid=pid,
            cpu_pct=c.cpu_pct,
            ram_mb=c.ram_mb,
            io_read_bps=c.io_read_bps,
            io_write_bps=c.io_write_bps,
            gpu_dedicated_mb=round(dedicated.get(pid, 0.0), 1),
            gpu_shared_mb=round(shared.get(pid, 0.0), 1),
        )
        for pid, c in sorted(counters.items())
    ]


class ProcessMetricsJoiner:
    """Produce one tick's batch of ``ProcessSample`` records.

    A failing counter source yields an empty batch for the tick; a
    failing GPU memory source contributes no instances, so the affected
    GPU fields fall back to zero.  Either logs one warning per source per
    session.
    """

    def __init__(
        self,
        counters: ProcessCounterSource | None = None,
        gpu_sources: list[GpuMemorySource] | None = None,
    ) -> None:
        self._counters = counters or ProcessCounterSource()
        self._gpu_sources = list(gpu_sources or [])
        self._opened: list[GpuMemorySource] = []
        self._warned: set[str] = set()

    def open(self) -> None:
        for source in self._gpu_sources:
            try:
                source.open()
            except Exception as exc:
                log.info("GPU memory source %s unavailable: %s", source.name, exc)
                continue
            self._opened.append(source)

    def close(self) -> None:
        for source in self._opened:
            try:
                source.close()
            except Exception as exc:
                log.warning("Failed to close GPU memory source %s: %s", source.name, exc)
        self._opened = []

    def _warn_once(self, key: str, message: str, *args: object) -> None:
        if key in self._warned:
            log.debug(message, *args)
            return
        self._warned.add(key)
        log.warning(message, *args)

    def sample(self, timestamp: float) -> list[ProcessSample]:
        try:
            counters = self._counters.sample()
        except Exception as exc:
            self._warn_once("counters", "Process counters unavailable: %s", exc)
            return []

        instances: list[GpuMemoryInstance] = []
        for source in self._opened:
            try:
                instances.extend(source.sample())
            except Exception as exc:
                self._warn_once(
                    source.name, "GPU memory source %s failed: %s", source.name, exc
                )
        return join(counters, instances, timestamp)
