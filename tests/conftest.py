"""Shared fixtures: a controllable clock and a CPU identity."""

from __future__ import annotations

import pytest

from telemetry_collector.sensors.procfs import CpuIdentity


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(1000.0)


@pytest.fixture()
def intel_cpu() -> CpuIdentity:
    return CpuIdentity(
        identifier="/intelcpu/0",
        name="Intel Core i7-1185G7",
        vendor="Intel",
    )
