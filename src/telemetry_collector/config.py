"""Configuration for the telemetry collector."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

FORMATS = ("jsonl", "csv")


@dataclass
class CollectorConfig:
    """Runtime configuration for the telemetry collector."""

    # Output directory for the stream files and metadata sidecar
    output_dir: Path = field(default_factory=Path.cwd)

    # Sampling tick period in seconds
    interval: float = 1.0

    # Flush buffered samples to disk every N seconds
    flush_interval: float = 15.0

    # Total run duration in minutes (0 = until cancelled)
    duration: float = 0

    # Output format for both streams: "jsonl" or "csv"
    output_format: str = "jsonl"

    # Whether to collect the per-process stream
    collect_processes: bool = True

    # Upper bound in seconds for one sensor backend poll (None = unbounded)
    poll_timeout: float | None = None

    # Filesystem roots, overridable for testing
    proc_root: str = "/proc"
    sysfs_root: str = "/sys"

    # Whether to try the NVIDIA management library for GPUs
    use_nvml: bool = True

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        if self.output_format not in FORMATS:
            raise ValueError(
                f"output_format must be one of {FORMATS}, got {self.output_format!r}"
            )
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        if self.flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        if self.duration < 0:
            raise ValueError("duration must be >= 0")
        if self.poll_timeout is not None and self.poll_timeout <= 0:
            raise ValueError("poll_timeout must be positive")
