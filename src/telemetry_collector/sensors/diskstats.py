"""Disk throughput from /proc/diskstats.

Parses /proc/diskstats for whole-disk block devices and reports read and
write bytes per second between polls, one storage node per device.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, ClassVar

from ..catalog import Hardware, HardwareType, SensorKind
from .rates import RateTracker

# Field indices within a /proc/diskstats line, counted after the device name.
# The line format is:
#   major minor name  rd_ios rd_merges rd_sectors rd_ticks
#                      wr_ios wr_merges wr_sectors wr_ticks ...
_FIELD_READ_SECTORS = 2
_FIELD_WRITE_SECTORS = 6

# /proc/diskstats always counts 512-byte sectors, whatever the device uses
_SECTOR_BYTES = 512


def is_whole_disk(dev_name: str) -> bool:
    """Return False for ram, loop, device-mapper and partition entries."""
    if dev_name.startswith(("ram", "loop", "dm-", "zram")):
        return False
    # sda1, vdb2 ...
    if dev_name[:2] in ("sd", "vd", "hd") and dev_name[-1].isdigit():
        return False
    # nvme0n1p1, mmcblk0p1
    if dev_name.startswith(("nvme", "mmcblk")) and "p" in dev_name.split("n", 1)[-1][1:]:
        return False
    return True


class DiskstatsBackend:
    """Report ``Read Rate`` / ``Write Rate`` (bytes/s) per whole disk."""

    name: ClassVar[str] = "diskstats"
    required: ClassVar[bool] = False

    def __init__(
        self,
        proc_root: str = "/proc",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._diskstats_path = Path(proc_root) / "diskstats"
        self._rates = RateTracker(clock)

    def open(self) -> None:
        self._diskstats_path.read_text()

    def close(self) -> None:
        pass

    def _read_sectors(self) -> dict[str, tuple[int, int]]:
        """Return ``device -> (sectors read, sectors written)`` for whole disks."""
        try:
            text = self._diskstats_path.read_text()
        except (FileNotFoundError, PermissionError):
            return {}

        counters: dict[str, tuple[int, int]] = {}
        for line in text.splitlines():
            parts = line.split()
            if len(parts) < 10:
                continue
            dev_name = parts[2]
            if not is_whole_disk(dev_name):
                continue
            try:
                fields = [int(p) for p in parts[3:]]
            except ValueError:
                continue
            counters[dev_name] = (fields[_FIELD_READ_SECTORS], fields[_FIELD_WRITE_SECTORS])
        return counters

    def poll(self) -> list[Hardware]:
        nodes: list[Hardware] = []
        for dev_name, (read_sectors, write_sectors) in sorted(self._read_sectors().items()):
            node = Hardware(identifier=f"/disk/{dev_name}", hw_type=HardwareType.STORAGE, name=dev_name)
            read_rate = self._rates.rate(f"{dev_name}:read", read_sectors * _SECTOR_BYTES)
            write_rate = self._rates.rate(f"{dev_name}:write", write_sectors * _SECTOR_BYTES)
            node.add(SensorKind.THROUGHPUT, "Read Rate", "0", round(read_rate, 1) if read_rate is not None else None)
            node.add(SensorKind.THROUGHPUT, "Write Rate", "1", round(write_rate, 1) if write_rate is not None else None)
            nodes.append(node)
        return nodes
