"""CPU core clocks from the sysfs cpufreq interface.

Reads per-CPU scaling_cur_freq (KHz) and reports MHz as a float.
"""

from __future__ import annotations

from pathlib import Path
from typing import ClassVar

from ..catalog import Hardware, HardwareType, SensorKind
from .procfs import CpuIdentity


class CpufreqBackend:
    """Attach a ``CPU Core #N`` clock sensor per logical CPU to the CPU node.

    CPUs are rediscovered on every poll, so CPUs brought online mid-session
    show up from that poll onward.
    """

    name: ClassVar[str] = "cpufreq"
    required: ClassVar[bool] = False

    def __init__(
        self,
        cpu: CpuIdentity,
        sysfs_root: str = "/sys/devices/system/cpu",
    ) -> None:
        self._cpu = cpu
        self._root = Path(sysfs_root)

    @classmethod
    def discover_cpufreq(cls, sysfs_root: str = "/sys/devices/system/cpu") -> list[int]:
        """Discover CPU indices that have a cpufreq/scaling_cur_freq file.

        Args:
            sysfs_root: Base path to the CPU sysfs directory.

        Returns:
            Sorted list of CPU indices with cpufreq support.
        """
        root = Path(sysfs_root)
        indices: list[int] = []

        if not root.is_dir():
            return indices

        for entry in root.iterdir():
            if not entry.is_dir() or not entry.name.startswith("cpu"):
                continue
            suffix = entry.name[3:]
            if not suffix.isdigit():
                continue
            freq_file = entry / "cpufreq" / "scaling_cur_freq"
            if freq_file.exists():
                indices.append(int(suffix))

        return sorted(indices)

    def open(self) -> None:
        if not self.discover_cpufreq(str(self._root)):
            raise FileNotFoundError(f"no cpufreq entries under {self._root}")

    def close(self) -> None:
        pass

    def poll(self) -> list[Hardware]:
        cpu = Hardware(
            identifier=self._cpu.identifier,
            hw_type=HardwareType.CPU,
            name=self._cpu.name,
            vendor=self._cpu.vendor,
        )
        for idx in self.discover_cpufreq(str(self._root)):
            path = self._root / f"cpu{idx}" / "cpufreq" / "scaling_cur_freq"
            try:
                mhz: float | None = int(path.read_text().strip()) / 1000.0
            except (FileNotFoundError, PermissionError, ValueError):
                mhz = None
            cpu.add(SensorKind.CLOCK, f"CPU Core #{idx + 1}", str(idx + 1), mhz)
        return [cpu]
