"""Thermal zone temperatures from sysfs.

Reads /sys/class/thermal/thermal_zone{N}/temp (millidegrees) and type,
reporting Celsius floats on a single ACPI node.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from ..catalog import Hardware, HardwareType, SensorKind


@dataclass(frozen=True)
class ThermalZone:
    """Description of a single thermal zone."""

    index: int  # Zone number
    zone_type: str  # Contents of the "type" file (e.g. "x86_pkg_temp")
    temp_path: Path  # Full path to the "temp" file


class ThermalBackend:
    """Read thermal zone temperatures from sysfs.

    Each zone becomes a temperature sensor named after its type (e.g.
    ``x86_pkg_temp``) with sensor id ``zone{N}``.
    """

    name: ClassVar[str] = "thermal"
    required: ClassVar[bool] = False

    NODE_ID: ClassVar[str] = "/acpi/thermal"

    def __init__(self, sysfs_root: str = "/sys/class/thermal") -> None:
        self._root = sysfs_root
        self._zones: list[ThermalZone] = []

    @classmethod
    def discover_thermal(
        cls, sysfs_root: str = "/sys/class/thermal"
    ) -> list[ThermalZone]:
        """Discover available thermal zones in sysfs.

        Args:
            sysfs_root: Base path to the thermal class directory.

        Returns:
            A list of discovered ThermalZone descriptors, sorted by index.
        """
        root = Path(sysfs_root)
        zones: list[ThermalZone] = []

        if not root.is_dir():
            return zones

        for entry in sorted(root.iterdir()):
            if not entry.is_dir() or not entry.name.startswith("thermal_zone"):
                continue
            suffix = entry.name[len("thermal_zone") :]
            if not suffix.isdigit():
                continue
            index = int(suffix)

            temp_path = entry / "temp"
            if not temp_path.exists():
                continue

            try:
                zone_type = (entry / "type").read_text().strip()
            except (FileNotFoundError, PermissionError):
                zone_type = f"zone{index}"

            zones.append(
                ThermalZone(index=index, zone_type=zone_type, temp_path=temp_path)
            )

        return sorted(zones, key=lambda z: z.index)

    def open(self) -> None:
        self._zones = self.discover_thermal(self._root)
        if not self._zones:
            raise FileNotFoundError(f"no thermal zones under {self._root}")

    def close(self) -> None:
        self._zones = []

    def poll(self) -> list[Hardware]:
        node = Hardware(identifier=self.NODE_ID, hw_type=HardwareType.ACPI, name="ACPI Thermal")
        for zone in self._zones:
            try:
                celsius: float | None = int(zone.temp_path.read_text().strip()) / 1000.0
            except (FileNotFoundError, PermissionError, ValueError):
                celsius = None
            node.add(SensorKind.TEMPERATURE, zone.zone_type, f"zone{zone.index}", celsius)
        return [node]
