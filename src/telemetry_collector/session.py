"""The hardware session: one opened set of sensor backends.

Lifecycle is ``UNOPENED -> OPEN -> CLOSED``.  ``open()`` happens once
before the first tick, ``refresh()`` once per tick before any resolver
reads values, ``close()`` on every exit path (idempotent).
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Protocol

from .catalog import Hardware, HardwareSnapshot

if TYPE_CHECKING:
    from .config import CollectorConfig

log = logging.getLogger(__name__)


class CollectorError(Exception):
    """Base class for fatal collector errors."""


class HardwareSessionError(CollectorError):
    """The hardware session could not be opened; no sensor data is obtainable."""


class SensorBackend(Protocol):
    """Protocol for all sensor backends."""

    name: str
    required: bool

    def open(self) -> None: ...

    def poll(self) -> list[Hardware]: ...

    def close(self) -> None: ...


class SessionState(str, Enum):
    UNOPENED = "unopened"
    OPEN = "open"
    CLOSED = "closed"


def merge_nodes(nodes: list[Hardware]) -> HardwareSnapshot:
    """Merge nodes sharing an identifier, keeping first-seen order.

    Several backends report sensors for the same physical device (the CPU
    node collects load, clocks, power and temperatures); the first node
    seen supplies the device name and vendor.
    """
    merged: dict[str, Hardware] = {}
    for node in nodes:
        existing = merged.get(node.identifier)
        if existing is None:
            merged[node.identifier] = Hardware(
                identifier=node.identifier,
                hw_type=node.hw_type,
                name=node.name,
                vendor=node.vendor,
                sensors=list(node.sensors),
            )
        else:
            existing.sensors.extend(node.sensors)
    return HardwareSnapshot(hardware=list(merged.values()))


class _BoundedPoll:
    """Run one backend's ``poll()`` on a daemon thread with a deadline.

    A poll that overruns is abandoned, not interrupted.  Until that poll
    returns the backend is not polled again, so a backend never sees two
    concurrent polls.  The thread is a daemon and cannot hold up
    interpreter exit.
    """

    def __init__(self, backend: SensorBackend, timeout: float) -> None:
        self._backend = backend
        self._timeout = timeout
        self._thread: threading.Thread | None = None

    def __call__(self) -> list[Hardware]:
        if self._thread is not None and self._thread.is_alive():
            raise TimeoutError("previous poll still running")

        done = threading.Event()
        outcome: dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["nodes"] = self._backend.poll()
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        self._thread = threading.Thread(
            target=target, name=f"poll-{self._backend.name}", daemon=True
        )
        self._thread.start()
        if not done.wait(self._timeout):
            raise TimeoutError(f"poll exceeded {self._timeout}s")
        if "error" in outcome:
            raise outcome["error"]
        return outcome["nodes"]


class HardwareSession:
    """Own a set of backends for the lifetime of one collection run.

    With ``poll_timeout`` set, each backend poll is bounded by it; an
    overrunning poll counts as a failed poll for that tick.
    """

    def __init__(self, backends: list[SensorBackend], poll_timeout: float | None = None) -> None:
        self._backends = backends
        self._opened: list[SensorBackend] = []
        self._state = SessionState.UNOPENED
        self._poll_warned: set[str] = set()
        self._poll_timeout = poll_timeout
        self._pollers: list[Callable[[], list[Hardware]]] = []
        self._snapshot = HardwareSnapshot()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def backend_names(self) -> list[str]:
        """Names of the backends that opened successfully."""
        return [b.name for b in self._opened]

    @property
    def snapshot(self) -> HardwareSnapshot:
        """The snapshot produced by the most recent refresh."""
        return self._snapshot

    def open(self) -> None:
        """Open every backend.

        Raises:
            HardwareSessionError: a required backend failed to open, or no
                backend opened at all.  Backends opened so far are closed
                again before raising.
        """
        if self._state is not SessionState.UNOPENED:
            raise RuntimeError(f"cannot open a session in state {self._state.value}")

        for backend in self._backends:
            try:
                backend.open()
            except Exception as exc:
                if backend.required:
                    self._close_opened()
                    self._state = SessionState.CLOSED
                    raise HardwareSessionError(
                        f"required sensor backend {backend.name!r} failed to open: {exc}"
                    ) from exc
                log.info("Sensor backend %s unavailable: %s", backend.name, exc)
                continue
            self._opened.append(backend)
            self._pollers.append(
                backend.poll
                if self._poll_timeout is None
                else _BoundedPoll(backend, self._poll_timeout)
            )

        if not self._opened:
            self._state = SessionState.CLOSED
            raise HardwareSessionError("no sensor backend could be opened")

        self._state = SessionState.OPEN
        log.debug("Hardware session open with backends: %s", ", ".join(self.backend_names))

    def refresh(self) -> HardwareSnapshot:
        """Poll every open backend once and return the merged snapshot.

        A backend that raises contributes nothing to this snapshot; the
        first failure per backend is logged as a warning, later ones at
        debug level.
        """
        if self._state is not SessionState.OPEN:
            raise RuntimeError(f"cannot refresh a session in state {self._state.value}")

        nodes: list[Hardware] = []
        for backend, poll in zip(self._opened, self._pollers):
            try:
                nodes.extend(poll())
            except Exception as exc:
                if backend.name not in self._poll_warned:
                    self._poll_warned.add(backend.name)
                    log.warning("Sensor backend %s poll failed: %s", backend.name, exc)
                else:
                    log.debug("Sensor backend %s poll failed: %s", backend.name, exc)
        self._snapshot = merge_nodes(nodes)
        return self._snapshot

    def _close_opened(self) -> None:
        for backend in reversed(self._opened):
            try:
                backend.close()
            except Exception as exc:
                log.warning("Failed to close sensor backend %s: %s", backend.name, exc)
        self._opened = []
        self._pollers = []

    def close(self) -> None:
        """Close every open backend.  Safe to call more than once."""
        if self._state is SessionState.CLOSED:
            return
        self._close_opened()
        self._state = SessionState.CLOSED

    def __enter__(self) -> HardwareSession:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()


def build_backends(config: CollectorConfig) -> list[SensorBackend]:
    """Instantiate the default backend set for this host."""
    from .sensors.cpufreq import CpufreqBackend
    from .sensors.diskstats import DiskstatsBackend
    from .sensors.drm import DrmBackend
    from .sensors.hwmon import HwmonBackend
    from .sensors.network import NetworkBackend
    from .sensors.os_counters import OsCountersBackend
    from .sensors.power_supply import PowerSupplyBackend
    from .sensors.procfs import ProcfsBackend, read_cpu_identity
    from .sensors.rapl import RaplBackend
    from .sensors.thermal import ThermalBackend

    sys_root = config.sysfs_root.rstrip("/")
    cpu = read_cpu_identity(config.proc_root)

    backends: list[SensorBackend] = [
        ProcfsBackend(cpu, config.proc_root),
        CpufreqBackend(cpu, f"{sys_root}/devices/system/cpu"),
        RaplBackend(cpu, f"{sys_root}/class/powercap"),
        HwmonBackend(cpu, f"{sys_root}/class/hwmon"),
        ThermalBackend(f"{sys_root}/class/thermal"),
        DrmBackend(f"{sys_root}/class/drm", config.proc_root),
        PowerSupplyBackend(f"{sys_root}/class/power_supply"),
        NetworkBackend(f"{sys_root}/class/net"),
        DiskstatsBackend(config.proc_root),
        OsCountersBackend(sys_root),
    ]

    if config.use_nvml:
        from .sensors.nvml import NvmlBackend

        backends.append(NvmlBackend())

    return backends
