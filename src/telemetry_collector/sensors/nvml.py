"""NVIDIA GPUs through the NVIDIA Management Library (pynvml).

Each NVML device becomes a GPU node with load (core, memory controller,
video decode/encode), temperature, power and memory sensors.  Every
query is independent: a device that does not support one of them (e.g.
power on some laptop parts) reports ``None`` for that sensor only.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, ClassVar

import pynvml

from ..catalog import Hardware, HardwareType, SensorKind

log = logging.getLogger(__name__)

_MIB = 1024.0 * 1024.0


def _text(raw: bytes | str) -> str:
    return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)


def _query(fn: Callable[..., Any], *args: Any) -> Any:
    """Call an NVML query, mapping any NVML error to ``None``."""
    try:
        return fn(*args)
    except pynvml.NVMLError:
        return None


class NvmlBackend:
    """Report NVIDIA GPUs enumerated by NVML at open time."""

    name: ClassVar[str] = "nvml"
    required: ClassVar[bool] = False

    def __init__(self) -> None:
        self._handles: list[tuple[int, Any, str]] = []  # (index, handle, name)
        self._initialized = False

    def open(self) -> None:
        """Initialise NVML; raises ``pynvml.NVMLError`` without a driver."""
        pynvml.nvmlInit()
        self._initialized = True
        for index in range(pynvml.nvmlDeviceGetCount()):
            handle = pynvml.nvmlDeviceGetHandleByIndex(index)
            name = _text(pynvml.nvmlDeviceGetName(handle))
            self._handles.append((index, handle, name))
        log.debug("NVML opened with %d device(s)", len(self._handles))

    def close(self) -> None:
        self._handles = []
        if self._initialized:
            self._initialized = False
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError as exc:
                log.debug("nvmlShutdown failed: %s", exc)

    def _poll_device(self, index: int, handle: Any, name: str) -> Hardware:
        node = Hardware(
            identifier=f"/{HardwareType.GPU_NVIDIA.value}/{index}",
            hw_type=HardwareType.GPU_NVIDIA,
            name=name.removeprefix("NVIDIA ").strip(),
            vendor="NVIDIA",
        )

        util = _query(pynvml.nvmlDeviceGetUtilizationRates, handle)
        node.add(SensorKind.LOAD, "GPU Core", "0", float(util.gpu) if util is not None else None)
        node.add(
            SensorKind.LOAD,
            "GPU Memory Controller",
            "1",
            float(util.memory) if util is not None else None,
        )

        decoder = _query(pynvml.nvmlDeviceGetDecoderUtilization, handle)
        node.add(SensorKind.LOAD, "GPU Video Decode", "2", float(decoder[0]) if decoder else None)
        encoder = _query(pynvml.nvmlDeviceGetEncoderUtilization, handle)
        node.add(SensorKind.LOAD, "GPU Video Encode", "3", float(encoder[0]) if encoder else None)

        temp = _query(pynvml.nvmlDeviceGetTemperature, handle, pynvml.NVML_TEMPERATURE_GPU)
        node.add(SensorKind.TEMPERATURE, "GPU Core", "0", float(temp) if temp is not None else None)

        power_mw = _query(pynvml.nvmlDeviceGetPowerUsage, handle)
        node.add(
            SensorKind.POWER,
            "GPU Package",
            "0",
            round(power_mw / 1000.0, 2) if power_mw is not None else None,
        )

        mem = _query(pynvml.nvmlDeviceGetMemoryInfo, handle)
        node.add(
            SensorKind.DATA,
            "GPU Memory Used",
            "0",
            round(mem.used / _MIB, 1) if mem is not None else None,
        )
        return node

    def poll(self) -> list[Hardware]:
        return [self._poll_device(index, handle, name) for index, handle, name in self._handles]
