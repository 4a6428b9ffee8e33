"""Tests for the procfs CPU load and memory backend."""

from __future__ import annotations

from pathlib import Path

import pytest

from telemetry_collector.catalog import HardwareType, SensorKind
from telemetry_collector.sensors.procfs import CpuIdentity, ProcfsBackend, read_cpu_identity

STAT_1 = """\
cpu  100 0 100 700 100 0 0 0 0 0
cpu0 50 0 50 350 50 0 0 0 0 0
cpu1 50 0 50 350 50 0 0 0 0 0
intr 12345
ctxt 67890
"""

# +100 busy and +100 idle overall; cpu0 fully busy, cpu1 fully idle
STAT_2 = """\
cpu  150 0 150 800 100 0 0 0 0 0
cpu0 100 0 100 350 50 0 0 0 0 0
cpu1 50 0 50 450 50 0 0 0 0 0
intr 12400
ctxt 67999
"""

MEMINFO = """\
MemTotal:       16384000 kB
MemFree:         2048000 kB
MemAvailable:    4096000 kB
Buffers:          512000 kB
"""


@pytest.fixture()
def fake_proc(tmp_path: Path) -> Path:
    (tmp_path / "stat").write_text(STAT_1)
    (tmp_path / "meminfo").write_text(MEMINFO)
    (tmp_path / "cpuinfo").write_text(
        "processor\t: 0\n"
        "vendor_id\t: GenuineIntel\n"
        "model name\t: Intel(R) Core(TM) i7-1185G7 @ 3.00GHz\n"
        "\n"
        "processor\t: 1\n"
        "vendor_id\t: GenuineIntel\n"
        "model name\t: Intel(R) Core(TM) i7-1185G7 @ 3.00GHz\n"
    )
    return tmp_path


def _loads(backend: ProcfsBackend) -> dict[str, float | None]:
    cpu = backend.poll()[0]
    return {s.name: s.value for s in cpu.sensors_of(SensorKind.LOAD)}


class TestReadCpuIdentity:
    """Tests for read_cpu_identity()."""

    def test_intel(self, fake_proc: Path) -> None:
        cpu = read_cpu_identity(str(fake_proc))
        assert cpu.identifier == "/intelcpu/0"
        assert cpu.vendor == "Intel"
        assert cpu.name.startswith("Intel(R) Core(TM)")

    def test_amd(self, tmp_path: Path) -> None:
        (tmp_path / "cpuinfo").write_text(
            "vendor_id\t: AuthenticAMD\nmodel name\t: AMD Ryzen 7 5800X\n"
        )
        cpu = read_cpu_identity(str(tmp_path))
        assert cpu.identifier == "/amdcpu/0"
        assert cpu.name == "AMD Ryzen 7 5800X"

    def test_missing_cpuinfo(self, tmp_path: Path) -> None:
        cpu = read_cpu_identity(str(tmp_path))
        assert cpu.identifier == "/cpu/0"
        assert cpu.name == "CPU"


class TestProcfsBackend:
    """Tests for ProcfsBackend.poll()."""

    def test_open_requires_stat(self, tmp_path: Path, intel_cpu: CpuIdentity) -> None:
        backend = ProcfsBackend(intel_cpu, str(tmp_path))
        with pytest.raises(OSError):
            backend.open()

    def test_first_poll_has_no_load(self, fake_proc: Path, intel_cpu: CpuIdentity) -> None:
        backend = ProcfsBackend(intel_cpu, str(fake_proc))
        backend.open()
        loads = _loads(backend)
        assert loads == {"CPU Total": None, "CPU Core #1": None, "CPU Core #2": None}

    def test_load_from_deltas(self, fake_proc: Path, intel_cpu: CpuIdentity) -> None:
        backend = ProcfsBackend(intel_cpu, str(fake_proc))
        backend.poll()
        (fake_proc / "stat").write_text(STAT_2)
        loads = _loads(backend)
        assert loads["CPU Total"] == pytest.approx(50.0)
        assert loads["CPU Core #1"] == pytest.approx(100.0)
        assert loads["CPU Core #2"] == pytest.approx(0.0)

    def test_total_load_identifier(self, fake_proc: Path, intel_cpu: CpuIdentity) -> None:
        backend = ProcfsBackend(intel_cpu, str(fake_proc))
        cpu = backend.poll()[0]
        ids = [s.identifier for s in cpu.sensors_of(SensorKind.LOAD)]
        assert ids[0] == "/intelcpu/0/load/0"
        assert "/intelcpu/0/load/1" in ids

    def test_memory(self, fake_proc: Path, intel_cpu: CpuIdentity) -> None:
        backend = ProcfsBackend(intel_cpu, str(fake_proc))
        memory = backend.poll()[1]
        assert memory.hw_type is HardwareType.MEMORY
        values = {s.name: s.value for s in memory.sensors}
        assert values["Memory Used"] == pytest.approx(12000.0)
        assert values["Memory Available"] == pytest.approx(4000.0)
        assert values["Memory"] == pytest.approx(75.0)

    def test_missing_meminfo(self, tmp_path: Path, intel_cpu: CpuIdentity) -> None:
        (tmp_path / "stat").write_text(STAT_1)
        backend = ProcfsBackend(intel_cpu, str(tmp_path))
        memory = backend.poll()[1]
        assert memory.sensors == []
