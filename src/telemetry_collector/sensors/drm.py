"""AMD and Intel graphics cards from the sysfs DRM interface.

Each /sys/class/drm/card{N} whose PCI vendor is AMD or Intel becomes a
GPU node.  amdgpu publishes ``gpu_busy_percent`` plus a hwmon directory
with temperature and power; i915 publishes the current GT frequency.
NVIDIA cards are left to the NVML backend.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ClassVar

from ..catalog import Hardware, HardwareType, SensorKind
from .fdinfo import ENGINE_CLASSES, DrmClient, scan_clients
from .hwmon import INPUT_KINDS, HwmonSensor, read_input
from .rates import RateTracker

_CARD_RE = re.compile(r"^card(\d+)$")

_VENDORS: dict[str, tuple[HardwareType, str]] = {
    "0x1002": (HardwareType.GPU_AMD, "AMD"),
    "0x8086": (HardwareType.GPU_INTEL, "Intel"),
}


@dataclass(frozen=True)
class DrmCard:
    """A graphics card found under /sys/class/drm."""

    index: int
    device_dir: Path  # /sys/class/drm/cardN/device
    hw_type: HardwareType
    vendor: str
    name: str
    pdev: str  # PCI address the card resolves to, e.g. "0000:03:00.0"


def _read(path: Path) -> str | None:
    try:
        return path.read_text().strip()
    except (FileNotFoundError, PermissionError, OSError):
        return None


def discover_cards(sysfs_root: str = "/sys/class/drm") -> list[DrmCard]:
    """Find AMD/Intel cards, ordered by card index."""
    root = Path(sysfs_root)
    cards: list[DrmCard] = []
    if not root.is_dir():
        return cards

    for entry in root.iterdir():
        match = _CARD_RE.match(entry.name)
        if match is None:
            continue
        device_dir = entry / "device"
        vendor_id = _read(device_dir / "vendor")
        if vendor_id not in _VENDORS:
            continue
        hw_type, vendor = _VENDORS[vendor_id]
        product = _read(device_dir / "product_name")
        if not product:
            device_id = _read(device_dir / "device") or "unknown"
            product = f"Graphics {device_id}"
        cards.append(
            DrmCard(
                index=int(match.group(1)),
                device_dir=device_dir,
                hw_type=hw_type,
                vendor=vendor,
                name=product,
                pdev=device_dir.resolve().name,
            )
        )
    return sorted(cards, key=lambda c: c.index)


class DrmBackend:
    """Report load, clocks, temperatures and power for AMD/Intel cards.

    3D and video-decode load come from the per-client engine busy time in
    fdinfo, summed over every client of the card and clipped to 100%.
    """

    name: ClassVar[str] = "drm"
    required: ClassVar[bool] = False

    def __init__(
        self,
        sysfs_root: str = "/sys/class/drm",
        proc_root: str = "/proc",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._root = sysfs_root
        self._proc_root = proc_root
        self._cards: list[DrmCard] = []
        self._rates = RateTracker(clock)

    @property
    def tracked_counters(self) -> int:
        """Engine busy counters currently held for rate computation."""
        return len(self._rates)

    def open(self) -> None:
        self._cards = discover_cards(self._root)
        if not self._cards:
            raise FileNotFoundError(f"no AMD/Intel cards under {self._root}")

    def close(self) -> None:
        self._cards = []

    def _hwmon_sensors(self, card: DrmCard) -> list[HwmonSensor]:
        sensors: list[HwmonSensor] = []
        hwmon_root = card.device_dir / "hwmon"
        if not hwmon_root.is_dir():
            return sensors
        for hwmon_dir in sorted(hwmon_root.iterdir()):
            for prefix, kind, divisor in INPUT_KINDS:
                pattern = "power*_average" if prefix == "power" else f"{prefix}*_input"
                for input_file in sorted(hwmon_dir.glob(pattern)):
                    stem = input_file.name.rsplit("_", 1)[0]
                    label = _read(hwmon_dir / f"{stem}_label") or stem
                    sensors.append(
                        HwmonSensor(
                            path=input_file,
                            chip=hwmon_dir.name,
                            stem=stem,
                            label=label,
                            kind=kind,
                            divisor=divisor,
                        )
                    )
        return sensors

    def _engine_loads(self, clients: list[DrmClient]) -> dict[str, float | None]:
        """Sum per-client engine busy percentages by engine class."""
        # no clients on the card means the engines are idle, not unknown
        idle = 0.0 if not clients else None
        totals: dict[str, float | None] = {"3d": idle, "decode": idle}
        for client in clients:
            for engine, busy_ns in client.engines_ns.items():
                engine_class = ENGINE_CLASSES.get(engine)
                if engine_class is None:
                    continue
                rate = self._rates.rate(f"{client.key}:{engine}", busy_ns)
                if rate is None:
                    continue
                totals[engine_class] = (totals[engine_class] or 0.0) + rate / 1e9 * 100.0
        return {
            name: round(min(100.0, value), 2) if value is not None else None
            for name, value in totals.items()
        }

    def _poll_card(self, card: DrmCard, clients: list[DrmClient]) -> Hardware:
        node = Hardware(
            identifier=f"/{card.hw_type.value}/{card.index}",
            hw_type=card.hw_type,
            name=card.name,
            vendor=card.vendor,
        )

        busy = _read(card.device_dir / "gpu_busy_percent")
        if busy is not None:
            try:
                node.add(SensorKind.LOAD, "GPU Core", "0", float(busy))
            except ValueError:
                node.add(SensorKind.LOAD, "GPU Core", "0", None)

        loads = self._engine_loads([c for c in clients if c.pdev == card.pdev])
        node.add(SensorKind.LOAD, "GPU 3D", "1", loads["3d"])
        node.add(SensorKind.LOAD, "GPU Video Decode", "2", loads["decode"])

        # i915 exposes the GT frequency on the card directory itself
        freq = _read(card.device_dir.parent / "gt_act_freq_mhz")
        if freq is not None:
            try:
                node.add(SensorKind.CLOCK, "GPU Core", "0", float(freq))
            except ValueError:
                pass

        for sensor in self._hwmon_sensors(card):
            name = sensor.label
            if sensor.kind is SensorKind.POWER:
                name = "GPU Package"
            elif sensor.kind is SensorKind.TEMPERATURE and sensor.label == "edge":
                name = "GPU Core"
            node.add(sensor.kind, name, f"{sensor.chip}_{sensor.stem}", read_input(sensor))
        return node

    def poll(self) -> list[Hardware]:
        clients = scan_clients(self._proc_root) if self._cards else []
        nodes = [self._poll_card(card, clients) for card in self._cards]
        # clients that closed their context since the last poll
        self._rates.retain({f"{c.key}:{engine}" for c in clients for engine in c.engines_ns})
        return nodes
