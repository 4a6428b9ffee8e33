"""OS-level aggregate counters through psutil, plus the active power plan.

These are the last-resort sources in most fallback chains: they do not
know about individual devices, but they are available on every platform
psutil supports.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, ClassVar

import psutil

from ..catalog import Hardware, HardwareType, SensorKind
from .rates import RateTracker

log = logging.getLogger(__name__)

_MB = 1024.0 * 1024.0


class OsCountersBackend:
    """Report psutil CPU, memory, disk, network and battery aggregates.

    Also reports the active power plan as text sensors: the ACPI platform
    profile (``/sys/firmware/acpi/platform_profile``) and the cpufreq
    governor of CPU 0.
    """

    name: ClassVar[str] = "os"
    required: ClassVar[bool] = False

    NODE_ID: ClassVar[str] = "/os"

    def __init__(
        self,
        sysfs_root: str = "/sys",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sysfs = Path(sysfs_root)
        self._rates = RateTracker(clock)

    def open(self) -> None:
        # The first call establishes the baseline and always returns 0.0
        psutil.cpu_percent(interval=None)

    def close(self) -> None:
        pass

    def _read_text(self, relative: str) -> str | None:
        try:
            return (self._sysfs / relative).read_text().strip() or None
        except (FileNotFoundError, PermissionError, OSError):
            return None

    def _rate(self, key: str, counter: float) -> float | None:
        rate = self._rates.rate(key, counter)
        return round(rate, 1) if rate is not None else None

    def poll(self) -> list[Hardware]:
        node = Hardware(identifier=self.NODE_ID, hw_type=HardwareType.OS, name="Operating System")

        node.add(SensorKind.LOAD, "CPU Total", "0", psutil.cpu_percent(interval=None))

        mem = psutil.virtual_memory()
        used = mem.total - mem.available
        node.add(SensorKind.LOAD, "Memory", "1", round(used / mem.total * 100.0, 2) if mem.total else None)
        node.add(SensorKind.DATA, "Memory Used", "0", round(used / _MB, 1))
        node.add(SensorKind.DATA, "Memory Available", "1", round(mem.available / _MB, 1))

        try:
            net = psutil.net_io_counters()
        except (OSError, RuntimeError) as exc:
            log.debug("net_io_counters failed: %s", exc)
            net = None
        if net is not None:
            node.add(SensorKind.THROUGHPUT, "Download Speed", "0", self._rate("net_rx", net.bytes_recv))
            node.add(SensorKind.THROUGHPUT, "Upload Speed", "1", self._rate("net_tx", net.bytes_sent))

        try:
            disk = psutil.disk_io_counters()
        except (OSError, RuntimeError) as exc:
            log.debug("disk_io_counters failed: %s", exc)
            disk = None
        if disk is not None:
            node.add(SensorKind.THROUGHPUT, "Read Rate", "2", self._rate("disk_read", disk.read_bytes))
            node.add(SensorKind.THROUGHPUT, "Write Rate", "3", self._rate("disk_write", disk.write_bytes))

        battery = psutil.sensors_battery() if hasattr(psutil, "sensors_battery") else None
        if battery is not None:
            node.add(SensorKind.LEVEL, "Battery Charge Level", "0", round(float(battery.percent), 1))

        node.add(
            SensorKind.TEXT,
            "Platform Profile",
            "0",
            self._read_text("firmware/acpi/platform_profile"),
        )
        node.add(
            SensorKind.TEXT,
            "CPU Governor",
            "1",
            self._read_text("devices/system/cpu/cpu0/cpufreq/scaling_governor"),
        )
        return [node]
