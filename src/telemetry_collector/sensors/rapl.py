"""CPU power from the RAPL energy counters in the sysfs powercap interface.

Reads Intel/AMD Running Average Power Limit (RAPL) energy counters from
/sys/class/powercap/intel-rapl:*/ and converts them to watts between
polls.  Requires root on most systems; unreadable domains are skipped.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ClassVar

from ..catalog import Hardware, HardwareType, SensorKind
from .procfs import CpuIdentity
from .rates import RateTracker

# Friendly names for the well-known RAPL domains
_DOMAIN_NAMES: dict[str, str] = {
    "package_0": "CPU Package",
    "package_0_core": "CPU Cores",
    "package_0_uncore": "CPU Graphics",
    "package_0_dram": "CPU Memory",
    "psys": "Platform",
}


@dataclass(frozen=True)
class RaplDomain:
    """Description of a single RAPL energy domain or subdomain."""

    name: str  # Sanitised domain name, prefixed with the parent for subdomains
    energy_path: Path  # Full path to the energy_uj file
    max_range_uj: int | None = None  # Counter wrap point, when published


class RaplBackend:
    """Attach one power sensor (watts) per RAPL domain to the CPU node.

    The first poll has no previous energy reading and reports ``None``.
    """

    name: ClassVar[str] = "rapl"
    required: ClassVar[bool] = False

    def __init__(
        self,
        cpu: CpuIdentity,
        sysfs_root: str = "/sys/class/powercap",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cpu = cpu
        self._root = sysfs_root
        self._domains: list[RaplDomain] = []
        self._rates = RateTracker(clock)
        self._last_energy: dict[str, int] = {}
        self._offsets: dict[str, int] = {}

    @classmethod
    def discover_rapl(cls, sysfs_root: str = "/sys/class/powercap") -> list[RaplDomain]:
        """Discover readable RAPL energy domains in sysfs.

        Scans both top-level domains (``intel-rapl:N``) and subdomains
        (``intel-rapl:N:M``).

        Args:
            sysfs_root: Base path to the powercap class directory.

        Returns:
            List of RaplDomain descriptors.  Empty if RAPL is unavailable.
        """
        root = Path(sysfs_root)
        domains: list[RaplDomain] = []

        if not root.is_dir():
            return domains

        rapl_dirs: list[Path] = []
        try:
            for entry in sorted(root.iterdir()):
                if entry.is_dir() and entry.name.startswith("intel-rapl:"):
                    rapl_dirs.append(entry)
                    try:
                        for sub_entry in sorted(entry.iterdir()):
                            if sub_entry.is_dir() and sub_entry.name.startswith(
                                "intel-rapl:"
                            ):
                                rapl_dirs.append(sub_entry)
                    except PermissionError:
                        continue
        except PermissionError:
            return domains

        for rapl_dir in rapl_dirs:
            energy_path = rapl_dir / "energy_uj"
            try:
                energy_path.read_text()
            except (FileNotFoundError, PermissionError):
                continue

            try:
                name = (rapl_dir / "name").read_text().strip()
            except (FileNotFoundError, PermissionError):
                name = rapl_dir.name
            name = name.replace(" ", "_").replace("-", "_").lower()

            # Disambiguate subdomains with the parent domain name
            parent = rapl_dir.parent
            if parent.name.startswith("intel-rapl:") and parent != root:
                try:
                    parent_name = (parent / "name").read_text().strip()
                    parent_name = parent_name.replace(" ", "_").replace("-", "_").lower()
                    name = f"{parent_name}_{name}"
                except (FileNotFoundError, PermissionError):
                    pass

            try:
                max_range: int | None = int(
                    (rapl_dir / "max_energy_range_uj").read_text().strip()
                )
            except (FileNotFoundError, PermissionError, ValueError):
                max_range = None

            domains.append(
                RaplDomain(name=name, energy_path=energy_path, max_range_uj=max_range)
            )

        return domains

    def open(self) -> None:
        self._domains = self.discover_rapl(self._root)
        if not self._domains:
            raise FileNotFoundError(f"no readable RAPL domains under {self._root}")

    def close(self) -> None:
        self._domains = []
        self._last_energy.clear()
        self._offsets.clear()

    def _unwrapped(self, domain: RaplDomain, raw: int) -> int:
        """Accumulate across counter wraps so the rate tracker sees a monotonic value."""
        last = self._last_energy.get(domain.name)
        self._last_energy[domain.name] = raw
        if last is not None and raw < last and domain.max_range_uj:
            self._offsets[domain.name] = self._offsets.get(domain.name, 0) + domain.max_range_uj
        return raw + self._offsets.get(domain.name, 0)

    def poll(self) -> list[Hardware]:
        cpu = Hardware(
            identifier=self._cpu.identifier,
            hw_type=HardwareType.CPU,
            name=self._cpu.name,
            vendor=self._cpu.vendor,
        )
        for idx, domain in enumerate(self._domains):
            try:
                raw = int(domain.energy_path.read_text().strip())
            except (FileNotFoundError, PermissionError, ValueError):
                self._rates.forget(domain.name)
                cpu.add(SensorKind.POWER, _DOMAIN_NAMES.get(domain.name, domain.name), str(idx), None)
                continue
            uj_per_s = self._rates.rate(domain.name, self._unwrapped(domain, raw))
            watts = round(uj_per_s / 1e6, 2) if uj_per_s is not None else None
            cpu.add(SensorKind.POWER, _DOMAIN_NAMES.get(domain.name, domain.name), str(idx), watts)
        return [cpu]
