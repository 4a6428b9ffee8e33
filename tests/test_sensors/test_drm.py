"""Tests for DRM fdinfo parsing and the AMD/Intel card backend.

PCI addresses contain colons, so tests building a sysfs tree are skipped
on Windows.
"""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

import pytest

from telemetry_collector.catalog import HardwareType, SensorKind
from telemetry_collector.sensors.drm import DrmBackend, discover_cards
from telemetry_collector.sensors.fdinfo import parse_fdinfo, scan_clients

_IS_WINDOWS = sys.platform == "win32"

PDEV = "0000:03:00.0"

AMDGPU_FDINFO = f"""\
pos:	0
flags:	02100002
mnt_id:	24
drm-driver:	amdgpu
drm-client-id:	17
drm-pdev:	{PDEV}
drm-memory-vram:	524288 KiB
drm-memory-gtt:	2048 KiB
drm-engine-gfx:	1000000000 ns
drm-engine-dec:	0 ns
drm-engine-compute:	500 ns
"""


def _fdinfo(gfx_ns: int, dec_ns: int, client_id: int = 17) -> str:
    return (
        AMDGPU_FDINFO.replace("drm-client-id:\t17", f"drm-client-id:\t{client_id}")
        .replace("1000000000 ns", f"{gfx_ns} ns")
        .replace("drm-engine-dec:\t0 ns", f"drm-engine-dec:\t{dec_ns} ns")
    )


def _write_fdinfo(proc: Path, pid: int, fd: int, text: str) -> None:
    fdinfo = proc / str(pid) / "fdinfo"
    fdinfo.mkdir(parents=True, exist_ok=True)
    (fdinfo / str(fd)).write_text(text)


class TestParseFdinfo:
    """Tests for parse_fdinfo()."""

    def test_amdgpu(self) -> None:
        client = parse_fdinfo(AMDGPU_FDINFO, pid=4242)
        assert client is not None
        assert client.key == f"4242:{PDEV}:17"
        assert client.dedicated_bytes == 512 * 1024 * 1024
        assert client.shared_bytes == 2 * 1024 * 1024
        assert client.engines_ns == {"gfx": 1000000000, "dec": 0, "compute": 500}

    def test_intel_regions(self) -> None:
        text = (
            "drm-driver:\ti915\n"
            "drm-client-id:\t5\n"
            "drm-pdev:\t0000:00:02.0\n"
            "drm-total-system0:\t16 MiB\n"
            "drm-resident-local0:\t1 GiB\n"
            "drm-engine-render:\t42 ns\n"
            "drm-engine-capacity-video:\t2\n"
        )
        client = parse_fdinfo(text, pid=1)
        assert client is not None
        assert client.dedicated_bytes == 1024**3
        assert client.shared_bytes == 16 * 1024 * 1024
        assert client.engines_ns == {"render": 42}

    def test_not_a_drm_client(self) -> None:
        assert parse_fdinfo("pos:\t0\nflags:\t0100002\n", pid=1) is None


class TestScanClients:
    """Tests for scan_clients()."""

    def test_deduplicates_by_client_id(self, tmp_path: Path) -> None:
        _write_fdinfo(tmp_path, 100, 5, AMDGPU_FDINFO)
        _write_fdinfo(tmp_path, 100, 6, AMDGPU_FDINFO)  # same client, second fd
        _write_fdinfo(tmp_path, 200, 3, _fdinfo(0, 0, client_id=18))
        _write_fdinfo(tmp_path, 300, 1, "pos:\t0\n")
        (tmp_path / "self").mkdir()
        clients = scan_clients(str(tmp_path))
        assert sorted((c.pid, c.client_id) for c in clients) == [(100, "17"), (200, "18")]

    def test_nonexistent_root(self, tmp_path: Path) -> None:
        assert scan_clients(str(tmp_path / "nonexistent")) == []


@pytest.fixture()
def fake_drm(tmp_path: Path) -> Path:
    """Create a fake /sys/class/drm tree with an AMD card and an NVIDIA card."""
    devices = tmp_path / "devices"
    drm = tmp_path / "drm"
    drm.mkdir()

    amd = devices / PDEV
    amd.mkdir(parents=True)
    (amd / "vendor").write_text("0x1002\n")
    (amd / "device").write_text("0x73bf\n")
    (amd / "product_name").write_text("AMD Radeon RX 6800 XT\n")
    (amd / "gpu_busy_percent").write_text("37\n")
    hwmon = amd / "hwmon" / "hwmon4"
    hwmon.mkdir(parents=True)
    (hwmon / "name").write_text("amdgpu\n")
    (hwmon / "temp1_input").write_text("61000\n")
    (hwmon / "temp1_label").write_text("edge\n")
    (hwmon / "power1_average").write_text("187000000\n")
    (drm / "card0").mkdir()
    (drm / "card0" / "device").symlink_to(amd)

    nvidia = devices / "0000:01:00.0"
    nvidia.mkdir(parents=True)
    (nvidia / "vendor").write_text("0x10de\n")
    (drm / "card1").mkdir()
    (drm / "card1" / "device").symlink_to(nvidia)

    # connectors are not cards
    (drm / "card0-DP-1").mkdir()
    return tmp_path


@pytest.mark.skipif(_IS_WINDOWS, reason="Colons not allowed in Windows paths")
class TestDrmBackend:
    """Tests for discover_cards() and DrmBackend.poll()."""

    def test_discovers_amd_only(self, fake_drm: Path) -> None:
        cards = discover_cards(str(fake_drm / "drm"))
        assert len(cards) == 1
        assert cards[0].hw_type is HardwareType.GPU_AMD
        assert cards[0].name == "AMD Radeon RX 6800 XT"
        assert cards[0].pdev == PDEV

    def test_open_without_cards_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            DrmBackend(str(tmp_path), str(tmp_path)).open()

    def test_sensors(self, fake_drm: Path, clock) -> None:
        backend = DrmBackend(str(fake_drm / "drm"), str(fake_drm / "proc"), clock=clock)
        backend.open()
        (node,) = backend.poll()
        assert node.identifier == "/gpu-amd/0"
        assert node.vendor == "AMD"
        loads = {s.name: s.value for s in node.sensors_of(SensorKind.LOAD)}
        # no DRM clients: engines idle
        assert loads == {"GPU Core": 37.0, "GPU 3D": 0.0, "GPU Video Decode": 0.0}
        temps = {s.name: s.value for s in node.sensors_of(SensorKind.TEMPERATURE)}
        assert temps == {"GPU Core": pytest.approx(61.0)}
        powers = {s.name: s.value for s in node.sensors_of(SensorKind.POWER)}
        assert powers == {"GPU Package": pytest.approx(187.0)}

    def test_engine_loads_from_fdinfo(self, fake_drm: Path, clock) -> None:
        proc = fake_drm / "proc"
        _write_fdinfo(proc, 4242, 7, _fdinfo(gfx_ns=1_000_000_000, dec_ns=0))
        backend = DrmBackend(str(fake_drm / "drm"), str(proc), clock=clock)
        backend.open()
        (node,) = backend.poll()
        loads = {s.name: s.value for s in node.sensors_of(SensorKind.LOAD)}
        assert loads["GPU 3D"] is None  # first sample of the client

        clock.advance(2.0)
        # 0.5 s of gfx and 0.2 s of decode busy time over 2 s
        _write_fdinfo(proc, 4242, 7, _fdinfo(gfx_ns=1_500_000_000, dec_ns=200_000_000))
        (node,) = backend.poll()
        loads = {s.name: s.value for s in node.sensors_of(SensorKind.LOAD)}
        assert loads["GPU 3D"] == pytest.approx(25.0)
        assert loads["GPU Video Decode"] == pytest.approx(10.0)

    def test_departed_clients_are_forgotten(self, fake_drm: Path, clock) -> None:
        proc = fake_drm / "proc"
        proc.mkdir()
        backend = DrmBackend(str(fake_drm / "drm"), str(proc), clock=clock)
        backend.open()
        for pid in range(1000, 1200):
            # one short-lived client per poll
            _write_fdinfo(proc, pid, 3, _fdinfo(gfx_ns=pid, dec_ns=0, client_id=pid))
            backend.poll()
            shutil.rmtree(proc / str(pid))
            clock.advance(1.0)
            # gfx and dec of the one live client
            assert backend.tracked_counters <= 2
        backend.poll()
        assert backend.tracked_counters == 0

    def test_live_client_keeps_its_baseline(self, fake_drm: Path, clock) -> None:
        proc = fake_drm / "proc"
        _write_fdinfo(proc, 4242, 7, _fdinfo(gfx_ns=0, dec_ns=0))
        backend = DrmBackend(str(fake_drm / "drm"), str(proc), clock=clock)
        backend.open()
        backend.poll()
        _write_fdinfo(proc, 5000, 1, _fdinfo(gfx_ns=0, dec_ns=0, client_id=99))
        clock.advance(1.0)
        _write_fdinfo(proc, 4242, 7, _fdinfo(gfx_ns=500_000_000, dec_ns=0))
        (node,) = backend.poll()
        loads = {s.name: s.value for s in node.sensors_of(SensorKind.LOAD)}
        # the new client has no baseline yet; the old one still yields a rate
        assert loads["GPU 3D"] == pytest.approx(50.0)
        assert backend.tracked_counters == 4
