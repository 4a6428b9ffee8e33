"""Battery state from /sys/class/power_supply.

Capacities are reported in milliwatt-hours.  Batteries that publish
charge (uAh) instead of energy (uWh) are converted with the design
minimum voltage.  The charge rate is signed: positive while charging,
negative while discharging.
"""

from __future__ import annotations

from pathlib import Path
from typing import ClassVar

from ..catalog import Hardware, HardwareType, SensorKind


def _read_int(path: Path) -> int | None:
    try:
        return int(path.read_text().strip())
    except (FileNotFoundError, PermissionError, ValueError, OSError):
        return None


def _read_str(path: Path) -> str | None:
    try:
        return path.read_text().strip()
    except (FileNotFoundError, PermissionError, OSError):
        return None


def discover_batteries(sysfs_root: str = "/sys/class/power_supply") -> list[Path]:
    """Return power supply directories whose type is ``Battery``."""
    root = Path(sysfs_root)
    if not root.is_dir():
        return []
    return [
        entry
        for entry in sorted(root.iterdir())
        if _read_str(entry / "type") == "Battery"
    ]


class PowerSupplyBackend:
    """Report capacity, charge level, degradation and rate per battery."""

    name: ClassVar[str] = "power_supply"
    required: ClassVar[bool] = False

    def __init__(self, sysfs_root: str = "/sys/class/power_supply") -> None:
        self._root = sysfs_root
        self._batteries: list[Path] = []

    def open(self) -> None:
        self._batteries = discover_batteries(self._root)
        if not self._batteries:
            raise FileNotFoundError(f"no batteries under {self._root}")

    def close(self) -> None:
        self._batteries = []

    @staticmethod
    def _energy_mwh(bat: Path, stem: str) -> float | None:
        """Read ``energy_<stem>`` (uWh), falling back to ``charge_<stem>`` (uAh)."""
        energy = _read_int(bat / f"energy_{stem}")
        if energy is not None:
            return round(energy / 1000.0, 1)
        charge = _read_int(bat / f"charge_{stem}")
        volts = _read_int(bat / "voltage_min_design")
        if charge is None or volts is None:
            return None
        # uAh * uV = 1e-12 Wh; to mWh divide by 1e9
        return round(charge * volts / 1e9, 1)

    @staticmethod
    def _rate_w(bat: Path) -> float | None:
        power = _read_int(bat / "power_now")
        if power is None:
            current = _read_int(bat / "current_now")
            volts = _read_int(bat / "voltage_now")
            if current is None or volts is None:
                return None
            power = current * volts // 1_000_000
        watts = round(abs(power) / 1e6, 3)
        status = _read_str(bat / "status")
        if status == "Discharging":
            return -watts
        if status in ("Full", "Not charging"):
            return 0.0
        return watts

    def _poll_battery(self, bat: Path) -> Hardware:
        model = _read_str(bat / "model_name") or bat.name
        node = Hardware(
            identifier=f"/battery/{bat.name}",
            hw_type=HardwareType.BATTERY,
            name=model,
            vendor=_read_str(bat / "manufacturer") or "",
        )

        capacity = _read_int(bat / "capacity")
        node.add(SensorKind.LEVEL, "Charge Level", "0", float(capacity) if capacity is not None else None)

        design = self._energy_mwh(bat, "full_design")
        full = self._energy_mwh(bat, "full")
        node.add(SensorKind.ENERGY, "Designed Capacity", "0", design)
        node.add(SensorKind.ENERGY, "Full Charged Capacity", "1", full)
        node.add(SensorKind.ENERGY, "Remaining Capacity", "2", self._energy_mwh(bat, "now"))

        degradation = None
        if design and full is not None:
            degradation = round(max(0.0, (1.0 - full / design) * 100.0), 2)
        node.add(SensorKind.LEVEL, "Degradation Level", "1", degradation)

        node.add(SensorKind.POWER, "Charge/Discharge Rate", "0", self._rate_w(bat))
        return node

    def poll(self) -> list[Hardware]:
        return [self._poll_battery(bat) for bat in self._batteries]
