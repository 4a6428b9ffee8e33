"""Sample records and the per-session schema registry.

The registry is the ordered set of every field name observed so far in a
session.  It only grows.  Writers consult it to decide which columns a
row carries, so a field seen once stays in every later row (as missing
when it has no value).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Iterable

FieldValue = int | float | str | None

TIMESTAMP = "timestamp"

# Fields every hardware row carries, in this order
REQUIRED_HARDWARE_FIELDS: tuple[str, ...] = (TIMESTAMP, "cpu_usage_pct", "ram_used_mb")


def format_timestamp(epoch: float) -> str:
    """ISO 8601 UTC with millisecond precision."""
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat(timespec="milliseconds")


class SchemaRegistry:
    """Ordered, grow-only set of field names."""

    def __init__(self, initial: Iterable[str] = ()) -> None:
        self._fields: dict[str, None] = {}
        self._lock = threading.Lock()
        self.observe(initial)

    def observe(self, names: Iterable[str]) -> list[str]:
        """Register names; return the ones not seen before, in order."""
        added: list[str] = []
        with self._lock:
            for name in names:
                if name not in self._fields:
                    self._fields[name] = None
                    added.append(name)
        return added

    @property
    def fields(self) -> list[str]:
        with self._lock:
            return list(self._fields)

    def __contains__(self, name: object) -> bool:
        return name in self._fields

    def __len__(self) -> int:
        return len(self._fields)


@dataclass
class MetricSample:
    """One tick of hardware metrics.

    ``fields`` holds every value the resolvers produced for this tick;
    ``None`` means the metric was attempted and missing.
    """

    timestamp: float  # seconds since the epoch
    fields: dict[str, FieldValue] = field(default_factory=dict)

    def to_row(self, columns: Iterable[str]) -> dict[str, FieldValue]:
        """Project onto ``columns``, filling absent fields with ``None``."""
        row: dict[str, FieldValue] = {}
        for name in columns:
            if name == TIMESTAMP:
                row[name] = format_timestamp(self.timestamp)
            else:
                row[name] = self.fields.get(name)
        return row


@dataclass
class ProcessSample:
    """One process as seen on one tick."""

    COLUMNS: ClassVar[tuple[str, ...]] = (
        TIMESTAMP,
        "process_name",
        "pid",
        "cpu_pct",
        "ram_mb",
        "io_read_bps",
        "io_write_bps",
        "gpu_dedicated_mb",
        "gpu_shared_mb",
    )

    timestamp: float
    process_name: str
    pid: int
    cpu_pct: float
    ram_mb: float
    io_read_bps: float
    io_write_bps: float
    gpu_dedicated_mb: float = 0.0
    gpu_shared_mb: float = 0.0

    def to_row(self, columns: Iterable[str] = COLUMNS) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for name in columns:
            if name == TIMESTAMP:
                row[name] = format_timestamp(self.timestamp)
            else:
                row[name] = getattr(self, name, None)
        return row
