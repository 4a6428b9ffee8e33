"""Temperatures, voltages, fans and power from the sysfs hwmon interface.

Walks /sys/class/hwmon/hwmon*/ on every poll so hot-plugged chips and
newly exposed inputs are picked up.  Values are converted from the
kernel's milli/micro units to Celsius, volts, RPM and watts.

Chips are attached to the device they describe: CPU temperature drivers
to the CPU node, NVMe/SATA drive sensors to a storage node, everything
else (Super I/O chips, ACPI) to a motherboard node.  Graphics drivers
are skipped here; the drm backend reads them through the card.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from ..catalog import Hardware, HardwareType, SensorKind
from .procfs import CpuIdentity

_CPU_CHIPS = frozenset({"coretemp", "k10temp", "zenpower", "cpu_thermal", "soc_thermal"})
_STORAGE_CHIPS = frozenset({"nvme", "drivetemp"})
_GPU_CHIPS = frozenset({"amdgpu", "radeon", "nouveau", "i915", "xe"})

# (file prefix, sensor kind, divisor to reach the canonical unit)
INPUT_KINDS: list[tuple[str, SensorKind, float]] = [
    ("temp", SensorKind.TEMPERATURE, 1000.0),  # millidegrees
    ("in", SensorKind.VOLTAGE, 1000.0),  # millivolts
    ("fan", SensorKind.FAN, 1.0),  # RPM
    ("power", SensorKind.POWER, 1_000_000.0),  # microwatts
]


@dataclass(frozen=True)
class HwmonSensor:
    """Description of a single hwmon input file."""

    path: Path  # Full path to the *_input (or power*_average) file
    chip: str  # Contents of the hwmon device's "name" file
    stem: str  # e.g. "temp1", "in0", "fan2"
    label: str  # Contents of the *_label file, or the stem
    kind: SensorKind
    divisor: float


def discover_hwmon(sysfs_root: str = "/sys/class/hwmon") -> dict[str, list[HwmonSensor]]:
    """Walk sysfs and group every hwmon input by its chip directory.

    Args:
        sysfs_root: Base path to the hwmon class directory.

    Returns:
        Mapping of hwmon directory name (e.g. ``hwmon3``) to its inputs.
    """
    root = Path(sysfs_root)
    chips: dict[str, list[HwmonSensor]] = {}

    if not root.is_dir():
        return chips

    for hwmon_dir in sorted(root.iterdir()):
        if not hwmon_dir.is_dir():
            continue

        try:
            chip = hwmon_dir.joinpath("name").read_text().strip()
        except (FileNotFoundError, PermissionError):
            chip = hwmon_dir.name

        sensors: list[HwmonSensor] = []
        for prefix, kind, divisor in INPUT_KINDS:
            candidates = sorted(hwmon_dir.glob(f"{prefix}*_input"))
            if prefix == "power":
                # amdgpu and some ACPI meters only publish an average
                candidates += sorted(hwmon_dir.glob("power*_average"))
            for input_file in candidates:
                stem = input_file.name.rsplit("_", 1)[0]
                if not stem[len(prefix):].isdigit():
                    continue
                if any(s.stem == stem for s in sensors):
                    continue
                try:
                    label = hwmon_dir.joinpath(f"{stem}_label").read_text().strip()
                except (FileNotFoundError, PermissionError):
                    label = stem
                sensors.append(
                    HwmonSensor(
                        path=input_file,
                        chip=chip,
                        stem=stem,
                        label=label or stem,
                        kind=kind,
                        divisor=divisor,
                    )
                )

        if sensors:
            chips[hwmon_dir.name] = sensors

    return chips


def read_input(sensor: HwmonSensor) -> float | None:
    """Read one input in canonical units, or None if unreadable."""
    try:
        raw = sensor.path.read_text().strip()
        return round(int(raw) / sensor.divisor, 3)
    except (FileNotFoundError, PermissionError, ValueError, OSError):
        return None


class HwmonBackend:
    """Report every hwmon input as a typed sensor on the device it belongs to."""

    name: ClassVar[str] = "hwmon"
    required: ClassVar[bool] = False

    def __init__(self, cpu: CpuIdentity, sysfs_root: str = "/sys/class/hwmon") -> None:
        self._cpu = cpu
        self._root = sysfs_root

    def open(self) -> None:
        if not Path(self._root).is_dir():
            raise FileNotFoundError(self._root)

    def close(self) -> None:
        pass

    def _node_for(self, hwmon_name: str, chip: str) -> Hardware | None:
        if chip in _GPU_CHIPS:
            return None
        if chip in _CPU_CHIPS:
            return Hardware(
                identifier=self._cpu.identifier,
                hw_type=HardwareType.CPU,
                name=self._cpu.name,
                vendor=self._cpu.vendor,
            )
        if chip in _STORAGE_CHIPS:
            return Hardware(
                identifier=f"/{chip}/{hwmon_name}",
                hw_type=HardwareType.STORAGE,
                name=f"{chip} {hwmon_name}",
            )
        return Hardware(
            identifier=f"/lpc/{chip}/{hwmon_name}",
            hw_type=HardwareType.MOTHERBOARD,
            name=chip,
        )

    def poll(self) -> list[Hardware]:
        nodes: list[Hardware] = []
        for hwmon_name, sensors in discover_hwmon(self._root).items():
            node = self._node_for(hwmon_name, sensors[0].chip)
            if node is None:
                continue
            for sensor in sensors:
                node.add(
                    sensor.kind,
                    sensor.label,
                    f"{sensor.chip}_{hwmon_name}_{sensor.stem}",
                    read_input(sensor),
                )
            nodes.append(node)
        return nodes
