"""Tests for the network throughput backend."""

from __future__ import annotations

from pathlib import Path

import pytest

from telemetry_collector.catalog import HardwareType, SensorKind
from telemetry_collector.sensors.network import NetworkBackend


def _write_stats(root: Path, iface: str, rx: int, tx: int) -> None:
    stats = root / iface / "statistics"
    stats.mkdir(parents=True, exist_ok=True)
    (stats / "rx_bytes").write_text(f"{rx}\n")
    (stats / "tx_bytes").write_text(f"{tx}\n")


@pytest.fixture()
def fake_net(tmp_path: Path) -> Path:
    """Create a fake /sys/class/net tree."""
    _write_stats(tmp_path, "eth0", 1000, 2000)
    _write_stats(tmp_path, "wlan0", 500, 100)
    _write_stats(tmp_path, "lo", 99999, 99999)
    # directory without statistics is ignored
    (tmp_path / "bonding_masters").mkdir()
    return tmp_path


class TestDiscoverInterfaces:
    """Tests for NetworkBackend.discover_interfaces()."""

    def test_skips_loopback(self, fake_net: Path) -> None:
        assert NetworkBackend.discover_interfaces(str(fake_net)) == ["eth0", "wlan0"]

    def test_include_loopback(self, fake_net: Path) -> None:
        ifaces = NetworkBackend.discover_interfaces(str(fake_net), skip_loopback=False)
        assert "lo" in ifaces

    def test_nonexistent_root(self, tmp_path: Path) -> None:
        assert NetworkBackend.discover_interfaces(str(tmp_path / "nonexistent")) == []


class TestNetworkBackend:
    """Tests for NetworkBackend.poll()."""

    def test_first_poll_is_none(self, fake_net: Path, clock) -> None:
        nodes = NetworkBackend(str(fake_net), clock=clock).poll()
        assert [n.identifier for n in nodes] == ["/nic/eth0", "/nic/wlan0"]
        assert all(n.hw_type is HardwareType.NETWORK for n in nodes)
        assert all(s.value is None for n in nodes for s in n.sensors)

    def test_rates(self, fake_net: Path, clock) -> None:
        backend = NetworkBackend(str(fake_net), clock=clock)
        backend.poll()
        clock.advance(2.0)
        _write_stats(fake_net, "eth0", 5000, 3000)
        nodes = {n.name: n for n in backend.poll()}
        speeds = {s.name: s.value for s in nodes["eth0"].sensors_of(SensorKind.THROUGHPUT)}
        assert speeds == {"Download Speed": pytest.approx(2000.0), "Upload Speed": pytest.approx(500.0)}

    def test_counter_reset(self, fake_net: Path, clock) -> None:
        backend = NetworkBackend(str(fake_net), clock=clock)
        backend.poll()
        clock.advance(1.0)
        _write_stats(fake_net, "eth0", 10, 10)
        nodes = {n.name: n for n in backend.poll()}
        assert all(s.value is None for s in nodes["eth0"].sensors)
