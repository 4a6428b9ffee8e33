"""DRM client statistics from /proc/<pid>/fdinfo.

Kernels since 5.19 publish per-client GPU statistics in the fdinfo of
every open DRM file descriptor: cumulative busy time per engine and
memory resident in each region.  Several descriptors of one process can
point at the same client; ``drm-client-id`` de-duplicates them.

Only processes owned by the collector's user (or all, when running as
root) are readable.  Unreadable entries are skipped silently.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_UNITS: dict[str, int] = {"": 1, "B": 1, "KiB": 1024, "MiB": 1024 * 1024, "GiB": 1024**3}

# fdinfo keys per memory region, by preference
_DEDICATED_KEYS = (
    "drm-resident-vram",
    "drm-memory-vram",
    "drm-total-vram",
    "drm-resident-local0",
    "drm-total-local0",
)
_SHARED_KEYS = (
    "drm-resident-gtt",
    "drm-memory-gtt",
    "drm-total-gtt",
    "drm-resident-system0",
    "drm-total-system0",
)

# Engine name -> logical engine class
ENGINE_CLASSES: dict[str, str] = {
    "gfx": "3d",
    "render": "3d",
    "rcs": "3d",
    "dec": "decode",
    "video": "decode",
    "vcs": "decode",
}


@dataclass
class DrmClient:
    """One DRM client (a process's open GPU context)."""

    pid: int
    pdev: str  # PCI address, e.g. "0000:03:00.0"
    client_id: str
    engines_ns: dict[str, int] = field(default_factory=dict)
    dedicated_bytes: int = 0
    shared_bytes: int = 0

    @property
    def key(self) -> str:
        return f"{self.pid}:{self.pdev}:{self.client_id}"


def _parse_amount(text: str) -> int | None:
    parts = text.split()
    if not parts:
        return None
    unit = parts[1] if len(parts) > 1 else ""
    try:
        return int(parts[0]) * _UNITS.get(unit, 1)
    except ValueError:
        return None


def parse_fdinfo(text: str, pid: int) -> DrmClient | None:
    """Parse one fdinfo file; ``None`` when it is not a DRM client."""
    fields: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip()] = value.strip()

    client_id = fields.get("drm-client-id")
    if client_id is None:
        return None

    client = DrmClient(pid=pid, pdev=fields.get("drm-pdev", ""), client_id=client_id)
    for key, value in fields.items():
        if key.startswith("drm-engine-") and not key.startswith("drm-engine-capacity-"):
            amount = _parse_amount(value.replace("ns", ""))
            if amount is not None:
                client.engines_ns[key.removeprefix("drm-engine-")] = amount

    for key in _DEDICATED_KEYS:
        if key in fields:
            client.dedicated_bytes = _parse_amount(fields[key]) or 0
            break
    for key in _SHARED_KEYS:
        if key in fields:
            client.shared_bytes = _parse_amount(fields[key]) or 0
            break
    return client


def scan_clients(proc_root: str = "/proc") -> list[DrmClient]:
    """Collect every readable DRM client on the system."""
    clients: dict[str, DrmClient] = {}
    root = Path(proc_root)
    try:
        entries = list(os.scandir(root))
    except OSError:
        return []

    for entry in entries:
        if not entry.name.isdigit():
            continue
        pid = int(entry.name)
        fdinfo_dir = root / entry.name / "fdinfo"
        try:
            fds = list(os.scandir(fdinfo_dir))
        except OSError:
            continue
        for fd in fds:
            try:
                text = Path(fd.path).read_text()
            except OSError:
                continue
            if "drm-client-id" not in text:
                continue
            client = parse_fdinfo(text, pid)
            if client is not None:
                clients.setdefault(client.key, client)
    return list(clients.values())
