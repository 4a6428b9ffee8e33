"""Tests for the psutil-backed OS counters backend."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import psutil
import pytest

from telemetry_collector.catalog import HardwareType, SensorKind
from telemetry_collector.sensors.os_counters import OsCountersBackend

_MB = 1024 * 1024


@pytest.fixture()
def fake_psutil(monkeypatch: pytest.MonkeyPatch) -> SimpleNamespace:
    """Patch psutil aggregates with mutable counters."""
    state = SimpleNamespace(recv=1000, sent=500, read=0, write=0)
    monkeypatch.setattr(psutil, "cpu_percent", lambda interval=None: 12.5)
    monkeypatch.setattr(
        psutil,
        "virtual_memory",
        lambda: SimpleNamespace(total=8000 * _MB, available=2000 * _MB),
    )
    monkeypatch.setattr(
        psutil,
        "net_io_counters",
        lambda: SimpleNamespace(bytes_recv=state.recv, bytes_sent=state.sent),
    )
    monkeypatch.setattr(
        psutil,
        "disk_io_counters",
        lambda: SimpleNamespace(read_bytes=state.read, write_bytes=state.write),
    )
    monkeypatch.setattr(psutil, "sensors_battery", lambda: None, raising=False)
    return state


@pytest.fixture()
def fake_sys(tmp_path: Path) -> Path:
    profile = tmp_path / "firmware" / "acpi"
    profile.mkdir(parents=True)
    (profile / "platform_profile").write_text("balanced\n")
    governor = tmp_path / "devices" / "system" / "cpu" / "cpu0" / "cpufreq"
    governor.mkdir(parents=True)
    (governor / "scaling_governor").write_text("powersave\n")
    return tmp_path


def _values(backend: OsCountersBackend) -> dict[str, object]:
    (node,) = backend.poll()
    assert node.hw_type is HardwareType.OS
    return {s.name: s.value for s in node.sensors}


class TestOsCountersBackend:
    def test_aggregates(self, fake_psutil: SimpleNamespace, fake_sys: Path, clock) -> None:
        backend = OsCountersBackend(str(fake_sys), clock=clock)
        backend.open()
        values = _values(backend)
        assert values["CPU Total"] == 12.5
        assert values["Memory"] == pytest.approx(75.0)
        assert values["Memory Used"] == pytest.approx(6000.0)
        assert values["Memory Available"] == pytest.approx(2000.0)
        assert values["Download Speed"] is None

    def test_throughput(self, fake_psutil: SimpleNamespace, fake_sys: Path, clock) -> None:
        backend = OsCountersBackend(str(fake_sys), clock=clock)
        backend.poll()
        clock.advance(2.0)
        fake_psutil.recv += 4000
        fake_psutil.write += 1_000_000
        values = _values(backend)
        assert values["Download Speed"] == pytest.approx(2000.0)
        assert values["Upload Speed"] == 0.0
        assert values["Write Rate"] == pytest.approx(500000.0)

    def test_power_plan(self, fake_psutil: SimpleNamespace, fake_sys: Path, clock) -> None:
        values = _values(OsCountersBackend(str(fake_sys), clock=clock))
        assert values["Platform Profile"] == "balanced"
        assert values["CPU Governor"] == "powersave"

    def test_power_plan_missing(self, fake_psutil: SimpleNamespace, tmp_path: Path, clock) -> None:
        values = _values(OsCountersBackend(str(tmp_path), clock=clock))
        assert values["Platform Profile"] is None
        assert values["CPU Governor"] is None
        assert "Battery Charge Level" not in values

    def test_battery(
        self,
        fake_psutil: SimpleNamespace,
        fake_sys: Path,
        clock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(
            psutil, "sensors_battery", lambda: SimpleNamespace(percent=64.0), raising=False
        )
        values = _values(OsCountersBackend(str(fake_sys), clock=clock))
        assert values["Battery Charge Level"] == 64.0
