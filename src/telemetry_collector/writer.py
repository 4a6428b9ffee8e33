"""Stream writers (JSON Lines or CSV) with a metadata JSON sidecar.

One writer per stream.  Rows are appended a batch at a time and each
batch is all-or-nothing: if the write fails part-way, the file is
truncated back to where the batch started and the error is re-raised,
so a retried batch never produces duplicate rows.

The columns of a row come from a callable (normally
``SchemaRegistry.fields``), evaluated at write time.  JSON Lines rows
carry their own field names and always contain every registered field.
A CSV header is fixed, so when new fields have been registered since the
header was written the file is rewritten with the wider header first,
back-filling earlier rows with empty cells.
"""

from __future__ import annotations

import csv
import io
import json
import os
import platform
import socket
import time
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Protocol, Sequence

if TYPE_CHECKING:
    from .config import CollectorConfig


class Row(Protocol):
    def to_row(self, columns: Sequence[str]) -> dict[str, Any]: ...


Columns = Callable[[], Sequence[str]]


def generate_basename(prefix: str = "telemetry") -> str:
    """Generate a file base name from hostname and start timestamp."""
    hostname = socket.gethostname()
    ts = time.strftime("%Y%m%d_%H%M%S", time.gmtime())
    return f"{prefix}_{hostname}_{ts}"


class StreamWriter:
    """Append-only writer for one stream; subclasses encode the rows."""

    suffix = ""

    def __init__(self, path: Path, columns: Columns) -> None:
        self._path = Path(path)
        self._columns = columns
        self._file: io.FileIO | None = None
        self._row_count = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def row_count(self) -> int:
        """Number of rows durably written so far."""
        return self._row_count

    def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "ab", buffering=0)  # noqa: SIM115

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _encode(self, rows: list[dict[str, Any]], columns: list[str]) -> bytes:
        raise NotImplementedError

    def _prepare(self, columns: list[str]) -> None:
        """Hook run before each batch; may rewrite the file."""

    def _opened_file(self) -> io.FileIO:
        if self._file is None:
            raise RuntimeError(f"{type(self).__name__} not opened; call open() first")
        return self._file

    def _append(self, data: bytes) -> None:
        f = self._opened_file()
        offset = os.lseek(f.fileno(), 0, os.SEEK_END)
        view = memoryview(data)
        try:
            while view:
                written = f.write(view)
                if written is None:
                    raise BlockingIOError("write would block")
                view = view[written:]
            os.fsync(f.fileno())
        except OSError:
            os.ftruncate(f.fileno(), offset)
            raise

    def write_batch(self, samples: Sequence[Row]) -> None:
        """Write every sample or none of them.

        Raises:
            OSError: the batch could not be persisted; the file is left as
                it was before the call.
        """
        self._opened_file()
        if not samples:
            return
        columns = list(self._columns())
        self._prepare(columns)
        rows = [s.to_row(columns) for s in samples]
        self._append(self._encode(rows, columns))
        self._row_count += len(rows)

    def __enter__(self) -> StreamWriter:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()


class JsonlWriter(StreamWriter):
    """One JSON object per line; missing values are ``null``."""

    suffix = ".jsonl"

    def _encode(self, rows: list[dict[str, Any]], columns: list[str]) -> bytes:
        return "".join(json.dumps(row) + "\n" for row in rows).encode("utf-8")


class CsvWriter(StreamWriter):
    """CSV with a header that widens as new fields are registered."""

    suffix = ".csv"

    def __init__(self, path: Path, columns: Columns) -> None:
        super().__init__(path, columns)
        self._header: list[str] = []

    @property
    def header(self) -> list[str]:
        return list(self._header)

    def _encode(self, rows: list[dict[str, Any]], columns: list[str]) -> bytes:
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=columns, extrasaction="ignore", lineterminator="\n")
        for row in rows:
            writer.writerow(row)
        return buf.getvalue().encode("utf-8")

    def _prepare(self, columns: list[str]) -> None:
        if columns == self._header:
            return
        if not self._header:
            buf = io.StringIO()
            csv.writer(buf, lineterminator="\n").writerow(columns)
            self._append(buf.getvalue().encode("utf-8"))
        else:
            self._widen(columns)
        self._header = columns

    def _widen(self, columns: list[str]) -> None:
        """Rewrite the file under ``columns``, back-filling earlier rows."""
        current = self._opened_file()
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with open(self._path, newline="", encoding="utf-8") as src, open(
            tmp_path, "w", newline="", encoding="utf-8"
        ) as dst:
            writer = csv.DictWriter(dst, fieldnames=columns, restval="", lineterminator="\n")
            writer.writeheader()
            for row in csv.DictReader(src):
                writer.writerow(row)
            dst.flush()
            os.fsync(dst.fileno())
        current.close()
        os.replace(tmp_path, self._path)
        self._file = open(self._path, "ab", buffering=0)  # noqa: SIM115


WRITERS: dict[str, type[StreamWriter]] = {"jsonl": JsonlWriter, "csv": CsvWriter}


class MetadataSidecar:
    """``<base>.meta.json`` describing the session and its output files."""

    def __init__(self, path: Path, config: CollectorConfig) -> None:
        self._path = Path(path)
        self._config = config

    @property
    def path(self) -> Path:
        return self._path

    def write(self, streams: dict[str, Path]) -> None:
        """Write the sidecar at startup."""
        config = asdict(self._config)
        # Path objects are not JSON serializable
        config["output_dir"] = str(config["output_dir"])
        meta = {
            "hostname": socket.gethostname(),
            "platform": platform.platform(),
            "kernel": platform.release(),
            "python_version": platform.python_version(),
            "start_time_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "streams": {name: path.name for name, path in streams.items()},
            "interval_s": self._config.interval,
            "flush_interval_s": self._config.flush_interval,
            "config": config,
            "pid": os.getpid(),
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w") as f:
            json.dump(meta, f, indent=2)

    def finalize(self, schema: list[str], row_counts: dict[str, int]) -> None:
        """Record end time, the final schema and per-stream row counts."""
        if not self._path.exists():
            return
        with open(self._path) as f:
            meta = json.load(f)
        meta["end_time_utc"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        meta["columns"] = schema
        meta["column_count"] = len(schema)
        meta["row_counts"] = row_counts
        with open(self._path, "w") as f:
            json.dump(meta, f, indent=2)
