"""Hardware model shared by every sensor backend, plus the session catalog.

Backends describe what they read as ``Hardware`` nodes carrying typed
``Sensor`` readings.  One refresh of all backends yields a
``HardwareSnapshot``; resolvers only ever look at a snapshot.

The ``SensorCatalog`` enumerates devices once at startup and hands out a
stable, sanitized key per device for the whole session.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator

Value = int | float | str


class HardwareType(str, Enum):
    """Device categories a backend can report."""

    CPU = "cpu"
    MEMORY = "memory"
    GPU_NVIDIA = "gpu-nvidia"
    GPU_AMD = "gpu-amd"
    GPU_INTEL = "gpu-intel"
    MOTHERBOARD = "motherboard"
    STORAGE = "storage"
    NETWORK = "network"
    BATTERY = "battery"
    ACPI = "acpi"
    OS = "os"

    @property
    def is_gpu(self) -> bool:
        return self in (HardwareType.GPU_NVIDIA, HardwareType.GPU_AMD, HardwareType.GPU_INTEL)


class SensorKind(str, Enum):
    """Physical quantity a sensor measures."""

    LOAD = "load"  # percent
    TEMPERATURE = "temperature"  # Celsius
    POWER = "power"  # watts
    CLOCK = "clock"  # MHz
    VOLTAGE = "voltage"  # volts
    FAN = "fan"  # RPM
    DATA = "data"  # megabytes
    THROUGHPUT = "throughput"  # bytes per second
    ENERGY = "energy"  # milliwatt-hours
    LEVEL = "level"  # percent of a capacity
    TEXT = "text"  # free-form string


@dataclass(frozen=True)
class SensorDescriptor:
    """Identity of one hardware sensor."""

    device_type: HardwareType
    device_name: str
    sensor_kind: SensorKind
    sensor_id: str  # e.g. "/intelcpu/0/load/0"


@dataclass(frozen=True)
class Sensor:
    """One sensor reading on a refreshed snapshot.

    ``value`` is ``None`` when the sensor exists but had nothing to report
    on this refresh (unreadable file, first delta sample, ...).
    """

    descriptor: SensorDescriptor
    name: str
    value: Value | None

    @property
    def kind(self) -> SensorKind:
        return self.descriptor.sensor_kind

    @property
    def identifier(self) -> str:
        return self.descriptor.sensor_id


@dataclass
class Hardware:
    """A device node as reported by a backend."""

    identifier: str  # e.g. "/intelcpu/0", "/gpu-nvidia/1"
    hw_type: HardwareType
    name: str
    vendor: str = ""
    sensors: list[Sensor] = field(default_factory=list)

    def add(self, kind: SensorKind, name: str, sensor_id: str, value: Value | None) -> None:
        """Append a sensor whose id is relative to this device."""
        descriptor = SensorDescriptor(
            device_type=self.hw_type,
            device_name=self.name,
            sensor_kind=kind,
            sensor_id=f"{self.identifier}/{kind.value}/{sensor_id}",
        )
        self.sensors.append(Sensor(descriptor=descriptor, name=name, value=value))

    def sensors_of(self, kind: SensorKind) -> list[Sensor]:
        return [s for s in self.sensors if s.kind is kind]


@dataclass
class HardwareSnapshot:
    """All hardware nodes as of one refresh."""

    hardware: list[Hardware] = field(default_factory=list)

    def devices(self, *types: HardwareType) -> list[Hardware]:
        """Return devices of the given types (all devices when none given)."""
        if not types:
            return list(self.hardware)
        return [hw for hw in self.hardware if hw.hw_type in types]

    def gpus(self) -> list[Hardware]:
        return [hw for hw in self.hardware if hw.hw_type.is_gpu]

    def device(self, identifier: str) -> Hardware | None:
        for hw in self.hardware:
            if hw.identifier == identifier:
                return hw
        return None

    def sensors(self) -> Iterator[Sensor]:
        for hw in self.hardware:
            yield from hw.sensors

    def find(self, sensor_id: str) -> Sensor | None:
        """Look up a sensor by its full identifier."""
        for sensor in self.sensors():
            if sensor.identifier == sensor_id:
                return sensor
        return None


_NON_ALNUM = re.compile(r"[^0-9a-zA-Z]+")


def sanitize(*parts: str) -> str:
    """Collapse name parts into a lowercase alphanumeric token."""
    return _NON_ALNUM.sub("", "".join(parts)).lower()


def column_token(text: str) -> str:
    """Lowercase ``text`` and squeeze runs of other characters into ``_``."""
    return _NON_ALNUM.sub("_", text).strip("_").lower()


class SensorCatalog:
    """Stable per-session device keys and a startup inventory.

    Keys are ``sanitize(vendor + device name)``.  Two devices that sanitize
    to the same key (e.g. two identical graphics cards) are told apart by a
    numeric suffix, assigned in discovery order.  A key never changes once
    handed out in a session.
    """

    def __init__(self) -> None:
        self._keys: dict[str, str] = {}  # hardware identifier -> key
        self._taken: set[str] = set()

    def key_for(self, hw: Hardware) -> str:
        key = self._keys.get(hw.identifier)
        if key is not None:
            return key
        base = sanitize(hw.vendor, hw.name) or sanitize(hw.identifier)
        key = base
        suffix = 2
        while key in self._taken:
            key = f"{base}{suffix}"
            suffix += 1
        self._keys[hw.identifier] = key
        self._taken.add(key)
        return key

    def known(self, hw: Hardware) -> bool:
        return hw.identifier in self._keys

    def register(self, snapshot: HardwareSnapshot) -> list[Hardware]:
        """Assign keys to unseen devices; return the newly seen ones."""
        new = [hw for hw in snapshot.hardware if not self.known(hw)]
        for hw in new:
            self.key_for(hw)
        return new


@dataclass
class Inventory:
    """Startup summary of what the first snapshot exposes."""

    cpus: list[str] = field(default_factory=list)
    gpus: dict[str, list[str]] = field(default_factory=dict)  # vendor type -> names
    voltage_sensors: int = 0
    fans: int = 0
    devices: int = 0


def build_inventory(snapshot: HardwareSnapshot) -> Inventory:
    inv = Inventory(devices=len(snapshot.hardware))
    for hw in snapshot.hardware:
        if hw.hw_type is HardwareType.CPU:
            inv.cpus.append(hw.name)
        elif hw.hw_type.is_gpu:
            inv.gpus.setdefault(hw.hw_type.value, []).append(hw.name)
        inv.voltage_sensors += len(hw.sensors_of(SensorKind.VOLTAGE))
        inv.fans += len(hw.sensors_of(SensorKind.FAN))
    return inv


def print_inventory(inv: Inventory) -> None:
    """Print a human-readable summary of the discovered hardware."""
    print("=== Hardware Inventory ===", file=sys.stderr)
    print(f"  Devices: {inv.devices}", file=sys.stderr)
    print(f"  CPUs: {inv.cpus}", file=sys.stderr)
    if inv.gpus:
        for vendor, names in sorted(inv.gpus.items()):
            print(f"  GPUs ({vendor}): {names}", file=sys.stderr)
    else:
        print("  GPUs: none", file=sys.stderr)
    print(f"  Voltage sensors: {inv.voltage_sensors}", file=sys.stderr)
    print(f"  Fans: {inv.fans}", file=sys.stderr)
