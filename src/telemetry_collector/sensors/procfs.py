"""CPU load and memory usage from /proc/stat, /proc/meminfo and /proc/cpuinfo.

CPU load is computed as delta percentages between successive polls, for
the aggregate ``cpu`` line and for every ``cpuN`` line.  The first poll
reports no load values because there is no previous sample to diff
against.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from ..catalog import Hardware, HardwareType, SensorKind

_VENDOR_PREFIXES: dict[str, tuple[str, str]] = {
    "GenuineIntel": ("intelcpu", "Intel"),
    "AuthenticAMD": ("amdcpu", "AMD"),
}


@dataclass(frozen=True)
class CpuIdentity:
    """The CPU device every CPU-side backend attaches its sensors to."""

    identifier: str  # e.g. "/intelcpu/0"
    name: str  # model name from /proc/cpuinfo
    vendor: str  # e.g. "Intel"


def read_cpu_identity(proc_root: str = "/proc") -> CpuIdentity:
    """Identify socket 0 from /proc/cpuinfo.

    Falls back to a generic identity when cpuinfo is missing or lacks the
    vendor/model lines (e.g. some ARM kernels).
    """
    vendor_id = ""
    model = ""
    try:
        text = (Path(proc_root) / "cpuinfo").read_text()
    except (FileNotFoundError, PermissionError):
        text = ""

    for line in text.splitlines():
        key, _, value = line.partition(":")
        key = key.strip()
        if key == "vendor_id" and not vendor_id:
            vendor_id = value.strip()
        elif key == "model name" and not model:
            model = value.strip()
        if vendor_id and model:
            break

    prefix, vendor = _VENDOR_PREFIXES.get(vendor_id, ("cpu", vendor_id or "Generic"))
    return CpuIdentity(identifier=f"/{prefix}/0", name=model or "CPU", vendor=vendor)


Jiffies = tuple[int, ...]


class ProcfsBackend:
    """Aggregate and per-core CPU load, plus memory usage.

    Reports a CPU node with ``CPU Total`` (sensor id ``load/0``) and
    ``CPU Core #N`` (``load/N``, 1-based) load sensors, and a memory node
    with ``Memory`` (percent), ``Memory Used`` and ``Memory Available``
    (megabytes).
    """

    name: ClassVar[str] = "procfs"
    required: ClassVar[bool] = True

    MEMORY_ID: ClassVar[str] = "/ram"

    def __init__(self, cpu: CpuIdentity, proc_root: str = "/proc") -> None:
        self._cpu = cpu
        self._stat_path = Path(proc_root) / "stat"
        self._meminfo_path = Path(proc_root) / "meminfo"
        # Previous jiffies per line ("cpu", "cpu0", ...) for delta calculation
        self._prev: dict[str, Jiffies] = {}

    def open(self) -> None:
        """Check that /proc/stat is readable; raises OSError otherwise."""
        self._stat_path.read_text()

    def close(self) -> None:
        self._prev.clear()

    # ------------------------------------------------------------------
    # /proc/stat helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_cpu_line(line: str) -> tuple[str, Jiffies]:
        """Parse a ``cpu`` or ``cpuN`` line from /proc/stat.

        Fields (all in jiffies):
            user, nice, system, idle, iowait, irq, softirq, steal, guest,
            guest_nice
        """
        parts = line.split()
        values = [int(p) for p in parts[1:11]]
        # Pad with zeros if the kernel exposes fewer fields
        while len(values) < 10:
            values.append(0)
        return parts[0], tuple(values)

    @staticmethod
    def _busy_pct(prev: Jiffies, cur: Jiffies) -> float | None:
        # guest time is already counted in user; leave it out of the total
        d_total = sum(cur[:8]) - sum(prev[:8])
        d_idle = (cur[3] + cur[4]) - (prev[3] + prev[4])  # idle + iowait
        if d_total <= 0:
            return None
        return round(max(0.0, min(100.0, (d_total - d_idle) / d_total * 100.0)), 2)

    def _poll_cpu(self) -> Hardware:
        cpu = Hardware(
            identifier=self._cpu.identifier,
            hw_type=HardwareType.CPU,
            name=self._cpu.name,
            vendor=self._cpu.vendor,
        )
        try:
            text = self._stat_path.read_text()
        except (FileNotFoundError, PermissionError):
            self._prev.clear()
            return cpu

        current: dict[str, Jiffies] = {}
        for line in text.splitlines():
            if not line.startswith("cpu"):
                continue
            with contextlib.suppress(IndexError, ValueError):
                label, jiffies = self._parse_cpu_line(line)
                current[label] = jiffies

        for label, jiffies in current.items():
            prev = self._prev.get(label)
            load = self._busy_pct(prev, jiffies) if prev is not None else None
            if label == "cpu":
                cpu.add(SensorKind.LOAD, "CPU Total", "0", load)
            else:
                suffix = label[3:]
                if not suffix.isdigit():
                    continue
                index = int(suffix)
                cpu.add(SensorKind.LOAD, f"CPU Core #{index + 1}", str(index + 1), load)

        self._prev = current
        return cpu

    # ------------------------------------------------------------------
    # /proc/meminfo helpers
    # ------------------------------------------------------------------

    def _read_meminfo(self) -> dict[str, int]:
        """Parse /proc/meminfo into a key -> kB mapping."""
        values: dict[str, int] = {}
        try:
            text = self._meminfo_path.read_text()
        except (FileNotFoundError, PermissionError):
            return values

        for line in text.splitlines():
            parts = line.split()
            if len(parts) < 2:
                continue
            with contextlib.suppress(ValueError):
                values[parts[0].rstrip(":")] = int(parts[1])
        return values

    def _poll_memory(self) -> Hardware:
        memory = Hardware(
            identifier=self.MEMORY_ID,
            hw_type=HardwareType.MEMORY,
            name="Generic Memory",
        )
        info = self._read_meminfo()
        total = info.get("MemTotal")
        available = info.get("MemAvailable")
        if total is None or available is None:
            return memory

        used = total - available
        memory.add(SensorKind.LOAD, "Memory", "0", round(used / total * 100.0, 2) if total else None)
        memory.add(SensorKind.DATA, "Memory Used", "0", round(used / 1024.0, 1))
        memory.add(SensorKind.DATA, "Memory Available", "1", round(available / 1024.0, 1))
        return memory

    def poll(self) -> list[Hardware]:
        return [self._poll_cpu(), self._poll_memory()]
