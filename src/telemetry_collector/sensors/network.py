"""Network throughput from sysfs interface counters.

Reads per-interface cumulative byte counters from
/sys/class/net/{iface}/statistics/ and reports bytes per second between
polls, one network node per interface.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, ClassVar

from ..catalog import Hardware, HardwareType, SensorKind
from .rates import RateTracker


class NetworkBackend:
    """Report ``Download Speed`` / ``Upload Speed`` per physical interface.

    Interfaces are rediscovered every poll.  The first poll of an
    interface reports ``None`` for both speeds.
    """

    name: ClassVar[str] = "network"
    required: ClassVar[bool] = False

    def __init__(
        self,
        sysfs_root: str = "/sys/class/net",
        clock: Callable[[], float] = time.monotonic,
        skip_virtual: bool = True,
    ) -> None:
        self._root = Path(sysfs_root)
        self._skip_virtual = skip_virtual
        self._rates = RateTracker(clock)

    @classmethod
    def discover_interfaces(
        cls,
        sysfs_root: str = "/sys/class/net",
        skip_loopback: bool = True,
        skip_virtual: bool = True,
    ) -> list[str]:
        """Discover network interfaces with statistics available in sysfs.

        Args:
            sysfs_root: Base path to the net class directory.
            skip_loopback: If True, exclude the ``lo`` interface.
            skip_virtual: If True, exclude interfaces whose sysfs entry is
                under /sys/devices/virtual/ (bridges, veth, etc.).

        Returns:
            Sorted list of interface names.
        """
        root = Path(sysfs_root)
        interfaces: list[str] = []

        if not root.is_dir():
            return interfaces

        for entry in sorted(root.iterdir()):
            if not entry.is_dir():
                continue
            iface = entry.name

            if skip_loopback and iface == "lo":
                continue

            if not (entry / "statistics").is_dir():
                continue

            if skip_virtual:
                try:
                    if "/devices/virtual/" in str(entry.resolve()):
                        continue
                except (OSError, ValueError):
                    pass

            interfaces.append(iface)

        return sorted(interfaces)

    def open(self) -> None:
        if not self._root.is_dir():
            raise FileNotFoundError(str(self._root))

    def close(self) -> None:
        pass

    def _counter(self, iface: str, stat: str) -> int | None:
        try:
            return int((self._root / iface / "statistics" / stat).read_text().strip())
        except (FileNotFoundError, PermissionError, ValueError):
            return None

    def poll(self) -> list[Hardware]:
        nodes: list[Hardware] = []
        for iface in self.discover_interfaces(str(self._root), skip_virtual=self._skip_virtual):
            node = Hardware(identifier=f"/nic/{iface}", hw_type=HardwareType.NETWORK, name=iface)
            for label, stat, sensor_id in (
                ("Download Speed", "rx_bytes", "0"),
                ("Upload Speed", "tx_bytes", "1"),
            ):
                raw = self._counter(iface, stat)
                if raw is None:
                    self._rates.forget(f"{iface}:{stat}")
                    node.add(SensorKind.THROUGHPUT, label, sensor_id, None)
                    continue
                rate = self._rates.rate(f"{iface}:{stat}", raw)
                node.add(
                    SensorKind.THROUGHPUT,
                    label,
                    sensor_id,
                    round(rate, 1) if rate is not None else None,
                )
            nodes.append(node)
        return nodes
