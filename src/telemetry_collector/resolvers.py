"""Metric resolution through priority-ordered fallback chains.

Every logical metric owns an ordered list of strategies.  A strategy is a
pure function of a refreshed ``HardwareSnapshot`` returning a value or
``None``; the first non-``None`` value wins for that tick.  Every strategy
is attempted again on every tick, so a source that recovers is picked up
immediately.

Resolvers come in two shapes:

* ``MetricResolver`` -- one fixed column resolved through a chain.
* ``SensorSetResolver`` -- an open-ended set of columns, one per sensor
  of a kind present on the current snapshot (voltage rails, core clocks).

The ``ResolverRegistry`` runs them all once per tick, owns the
"already warned" state per metric, and registers a resolver family for
every GPU as soon as the catalog first sees it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from .catalog import (
    Hardware,
    HardwareSnapshot,
    HardwareType,
    Sensor,
    SensorCatalog,
    SensorKind,
    column_token,
)
from .schema import FieldValue

log = logging.getLogger(__name__)

Extractor = Callable[[HardwareSnapshot], FieldValue]


@dataclass(frozen=True)
class Strategy:
    """One acquisition attempt in a fallback chain."""

    name: str
    extract: Extractor


# ----------------------------------------------------------------------
# Strategy builders
# ----------------------------------------------------------------------


def _first_value(sensors: Iterable[Sensor]) -> FieldValue:
    for sensor in sensors:
        if sensor.value is not None:
            return sensor.value
    return None


def by_identifier(pattern: str) -> Strategy:
    """Match the full sensor identifier against a regex."""
    regex = re.compile(pattern)

    def extract(snapshot: HardwareSnapshot) -> FieldValue:
        return _first_value(s for s in snapshot.sensors() if regex.fullmatch(s.identifier))

    return Strategy(f"id:{pattern}", extract)


def by_name(
    types: tuple[HardwareType, ...],
    kind: SensorKind,
    pattern: str,
    device: str | None = None,
) -> Strategy:
    """Match sensor names (regex search) of a kind on devices of some types.

    ``device`` restricts the search to one hardware identifier.
    """
    regex = re.compile(pattern)

    def extract(snapshot: HardwareSnapshot) -> FieldValue:
        for hw in snapshot.devices(*types):
            if device is not None and hw.identifier != device:
                continue
            value = _first_value(s for s in hw.sensors_of(kind) if regex.search(s.name))
            if value is not None:
                return value
        return None

    return Strategy(f"name:{kind.value}:{pattern}", extract)


def first_of_kind(
    types: tuple[HardwareType, ...],
    kind: SensorKind,
    device: str | None = None,
) -> Strategy:
    """Take the first sensor of the right kind with a value."""

    def extract(snapshot: HardwareSnapshot) -> FieldValue:
        for hw in snapshot.devices(*types):
            if device is not None and hw.identifier != device:
                continue
            value = _first_value(hw.sensors_of(kind))
            if value is not None:
                return value
        return None

    return Strategy(f"first:{kind.value}", extract)


def os_counter(kind: SensorKind, name: str) -> Strategy:
    """An OS-level aggregate reported on the operating system node."""
    strategy = by_name((HardwareType.OS,), kind, f"^{re.escape(name)}$")
    return Strategy(f"os:{name}", strategy.extract)


def sum_of(types: tuple[HardwareType, ...], kind: SensorKind, name: str) -> Strategy:
    """Sum a named sensor across every device of some types.

    ``None`` when no device reports a value, so an empty sum is missing
    rather than zero.
    """

    def extract(snapshot: HardwareSnapshot) -> FieldValue:
        values = [
            s.value
            for hw in snapshot.devices(*types)
            for s in hw.sensors_of(kind)
            if s.name == name and isinstance(s.value, (int, float))
        ]
        return round(sum(values), 1) if values else None

    return Strategy(f"sum:{kind.value}:{name}", extract)


def battery_degradation() -> Strategy:
    """Derive degradation from designed and full-charge capacities."""

    def extract(snapshot: HardwareSnapshot) -> FieldValue:
        for hw in snapshot.devices(HardwareType.BATTERY):
            capacities = {s.name: s.value for s in hw.sensors_of(SensorKind.ENERGY)}
            design = capacities.get("Designed Capacity")
            full = capacities.get("Full Charged Capacity")
            if isinstance(design, (int, float)) and design > 0 and isinstance(full, (int, float)):
                return round(max(0.0, (1.0 - full / design) * 100.0), 2)
        return None

    return Strategy("derived:battery_degradation", extract)


# ----------------------------------------------------------------------
# Resolvers
# ----------------------------------------------------------------------


class Resolver(Protocol):
    """Protocol for everything the registry can run."""

    name: str

    @property
    def fields(self) -> list[str]: ...

    def resolve(self, snapshot: HardwareSnapshot) -> dict[str, FieldValue]: ...


class MetricResolver:
    """A single column resolved through an ordered fallback chain."""

    def __init__(self, field: str, strategies: list[Strategy]) -> None:
        self.name = field
        self._field = field
        self._strategies = strategies

    @property
    def fields(self) -> list[str]:
        return [self._field]

    def resolve(self, snapshot: HardwareSnapshot) -> dict[str, FieldValue]:
        for strategy in self._strategies:
            value = strategy.extract(snapshot)
            if value is not None:
                return {self._field: value}
        return {self._field: None}


class SensorSetResolver:
    """One column per sensor of a kind on the current snapshot.

    Columns seen on an earlier tick but absent now are reported as
    missing, so the declared field set only grows.
    """

    def __init__(
        self,
        name: str,
        kind: SensorKind,
        column: Callable[[Hardware, Sensor], str],
        types: tuple[HardwareType, ...] = (),
    ) -> None:
        self.name = name
        self._kind = kind
        self._column = column
        self._types = types
        self._seen: dict[str, None] = {}

    @property
    def fields(self) -> list[str]:
        return list(self._seen)

    def resolve(self, snapshot: HardwareSnapshot) -> dict[str, FieldValue]:
        values: dict[str, FieldValue] = {}
        for hw in snapshot.devices(*self._types):
            for sensor in hw.sensors_of(self._kind):
                col = self._column(hw, sensor)
                if values.get(col) is None:
                    values[col] = sensor.value
        for col in values:
            self._seen.setdefault(col, None)
        return {col: values.get(col) for col in self._seen}


def _voltage_column(hw: Hardware, sensor: Sensor) -> str:
    return f"volt_{column_token(hw.name)}_{column_token(sensor.name)}_v"


def _core_clock_column(hw: Hardware, sensor: Sensor) -> str:
    return f"cpu_clock_{column_token(sensor.name).removeprefix('cpu_')}_mhz"


_CPU = (HardwareType.CPU,)
_MEMORY = (HardwareType.MEMORY,)
_BATTERY = (HardwareType.BATTERY,)


def build_resolvers() -> list[Resolver]:
    """The host-wide metric set, in output column order."""
    resolvers: list[Resolver] = [
        MetricResolver(
            "cpu_usage_pct",
            [
                by_identifier(r"/(intel|amd)cpu/0/load/0"),
                by_name(_CPU, SensorKind.LOAD, r"(?i)total|package|average"),
                first_of_kind(_CPU, SensorKind.LOAD),
                os_counter(SensorKind.LOAD, "CPU Total"),
            ],
        ),
        MetricResolver(
            "ram_used_mb",
            [
                by_identifier(r"/ram/data/0"),
                by_name(_MEMORY, SensorKind.DATA, r"(?i)^memory used$"),
                os_counter(SensorKind.DATA, "Memory Used"),
            ],
        ),
        MetricResolver(
            "ram_usage_pct",
            [
                by_name(_MEMORY, SensorKind.LOAD, r"^Memory$"),
                os_counter(SensorKind.LOAD, "Memory"),
            ],
        ),
        MetricResolver(
            "cpu_temp_c",
            [
                by_name(_CPU, SensorKind.TEMPERATURE, r"(?i)^(package id 0|cpu package|tctl|tdie)$"),
                by_name(_CPU, SensorKind.TEMPERATURE, r"(?i)package|total|average|max"),
                first_of_kind(_CPU, SensorKind.TEMPERATURE),
                by_name((HardwareType.ACPI,), SensorKind.TEMPERATURE, r"(?i)x86_pkg_temp|cpu"),
            ],
        ),
        MetricResolver(
            "cpu_power_w",
            [
                by_name(_CPU, SensorKind.POWER, r"^CPU Package$"),
                by_name(_CPU, SensorKind.POWER, r"(?i)package|total|socket"),
                first_of_kind(_CPU, SensorKind.POWER),
            ],
        ),
        MetricResolver(
            "fan_rpm",
            [
                by_name((HardwareType.MOTHERBOARD,), SensorKind.FAN, r"(?i)cpu"),
                first_of_kind((HardwareType.MOTHERBOARD,), SensorKind.FAN),
                first_of_kind((), SensorKind.FAN),
            ],
        ),
        MetricResolver(
            "battery_charge_pct",
            [
                by_name(_BATTERY, SensorKind.LEVEL, r"^Charge Level$"),
                os_counter(SensorKind.LEVEL, "Battery Charge Level"),
            ],
        ),
        MetricResolver(
            "battery_full_capacity_mwh",
            [by_name(_BATTERY, SensorKind.ENERGY, r"^Full Charged Capacity$")],
        ),
        MetricResolver(
            "battery_design_capacity_mwh",
            [by_name(_BATTERY, SensorKind.ENERGY, r"^Designed Capacity$")],
        ),
        MetricResolver(
            "battery_degradation_pct",
            [
                by_name(_BATTERY, SensorKind.LEVEL, r"^Degradation Level$"),
                battery_degradation(),
            ],
        ),
        MetricResolver(
            "battery_rate_w",
            [by_name(_BATTERY, SensorKind.POWER, r"(?i)rate")],
        ),
        MetricResolver(
            "net_down_bps",
            [
                sum_of((HardwareType.NETWORK,), SensorKind.THROUGHPUT, "Download Speed"),
                os_counter(SensorKind.THROUGHPUT, "Download Speed"),
            ],
        ),
        MetricResolver(
            "net_up_bps",
            [
                sum_of((HardwareType.NETWORK,), SensorKind.THROUGHPUT, "Upload Speed"),
                os_counter(SensorKind.THROUGHPUT, "Upload Speed"),
            ],
        ),
        MetricResolver(
            "disk_read_bps",
            [
                sum_of((HardwareType.STORAGE,), SensorKind.THROUGHPUT, "Read Rate"),
                os_counter(SensorKind.THROUGHPUT, "Read Rate"),
            ],
        ),
        MetricResolver(
            "disk_write_bps",
            [
                sum_of((HardwareType.STORAGE,), SensorKind.THROUGHPUT, "Write Rate"),
                os_counter(SensorKind.THROUGHPUT, "Write Rate"),
            ],
        ),
        MetricResolver(
            "power_plan",
            [
                os_counter(SensorKind.TEXT, "Platform Profile"),
                os_counter(SensorKind.TEXT, "CPU Governor"),
            ],
        ),
        SensorSetResolver("voltage_rails", SensorKind.VOLTAGE, _voltage_column),
        SensorSetResolver("cpu_core_clocks", SensorKind.CLOCK, _core_clock_column, _CPU),
    ]
    return resolvers


def gpu_resolvers(key: str, device: str, hw_type: HardwareType) -> list[Resolver]:
    """Resolver family for one GPU.

    ``key`` is the catalog's sanitized vendor+device name and ``device``
    the hardware identifier.  Vendor-specific sensor paths come before
    generic name patterns.
    """
    types = (hw_type,)
    prefix = f"gpu_{key}"
    ident = re.escape(device)
    return [
        MetricResolver(
            f"{prefix}_load_pct",
            [
                by_identifier(rf"{ident}/load/0"),
                by_name(types, SensorKind.LOAD, r"^GPU Core$", device),
                by_name(types, SensorKind.LOAD, r"(?i)core|total|busy", device),
            ],
        ),
        MetricResolver(
            f"{prefix}_decode_pct",
            [
                by_name(types, SensorKind.LOAD, r"^GPU Video Decode$", device),
                by_name(types, SensorKind.LOAD, r"(?i)decode", device),
            ],
        ),
        MetricResolver(
            f"{prefix}_3d_pct",
            [
                by_name(types, SensorKind.LOAD, r"^GPU 3D$", device),
                by_name(types, SensorKind.LOAD, r"(?i)\b3d\b|render|gfx", device),
            ],
        ),
        MetricResolver(
            f"{prefix}_power_w",
            [
                by_identifier(rf"{ident}/power/0"),
                by_name(types, SensorKind.POWER, r"(?i)package|total|board", device),
                first_of_kind(types, SensorKind.POWER, device),
            ],
        ),
        MetricResolver(
            f"{prefix}_temp_c",
            [
                by_identifier(rf"{ident}/temperature/0"),
                by_name(types, SensorKind.TEMPERATURE, r"^GPU Core$", device),
                by_name(types, SensorKind.TEMPERATURE, r"(?i)edge|core", device),
                first_of_kind(types, SensorKind.TEMPERATURE, device),
            ],
        ),
    ]


GpuFactory = Callable[[str, str, HardwareType], list[Resolver]]


class ResolverRegistry:
    """Run every resolver once per tick and own the per-metric warned state.

    A resolver that raises or yields no value records its declared fields
    as missing.  The first such failure of each resolver in a session logs
    one warning; later failures of the same resolver are silent.  Failed
    resolvers are still invoked on every tick.
    """

    def __init__(
        self,
        resolvers: list[Resolver] | None = None,
        catalog: SensorCatalog | None = None,
        gpu_factory: GpuFactory = gpu_resolvers,
    ) -> None:
        self._resolvers: list[Resolver] = list(build_resolvers() if resolvers is None else resolvers)
        self._catalog = catalog or SensorCatalog()
        self._gpu_factory = gpu_factory
        self._warned: set[str] = set()

    @property
    def resolvers(self) -> list[Resolver]:
        return list(self._resolvers)

    @property
    def catalog(self) -> SensorCatalog:
        return self._catalog

    @property
    def warned(self) -> frozenset[str]:
        return frozenset(self._warned)

    def add(self, resolver: Resolver) -> None:
        self._resolvers.append(resolver)

    def sync(self, snapshot: HardwareSnapshot) -> list[Hardware]:
        """Register resolver families for GPUs not seen before in this session."""
        new_gpus = [hw for hw in self._catalog.register(snapshot) if hw.hw_type.is_gpu]
        for hw in new_gpus:
            key = self._catalog.key_for(hw)
            log.info("GPU detected: %s %s (columns gpu_%s_*)", hw.vendor, hw.name, key)
            self._resolvers.extend(self._gpu_factory(key, hw.identifier, hw.hw_type))
        return new_gpus

    def _soft_fail(self, resolver: Resolver, reason: str) -> None:
        if resolver.name in self._warned:
            return
        self._warned.add(resolver.name)
        log.warning(
            "Metric %s unavailable: %s (further failures of this metric are not reported)",
            resolver.name,
            reason,
        )

    def resolve_all(self, snapshot: HardwareSnapshot) -> dict[str, FieldValue]:
        """Run every resolver against ``snapshot``; never raises."""
        fields: dict[str, FieldValue] = {}
        for resolver in list(self._resolvers):
            try:
                values = resolver.resolve(snapshot)
            except Exception as exc:
                values = {}
                self._soft_fail(resolver, f"{type(exc).__name__}: {exc}")
            else:
                if all(v is None for v in values.values()):
                    self._soft_fail(resolver, "no source reported a value")
            for name in resolver.fields:
                fields[name] = values.get(name)
            for name, value in values.items():
                fields.setdefault(name, value)
        return fields
