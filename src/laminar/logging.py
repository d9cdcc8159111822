from __future__ import annotations

import csv
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from io import StringIO
from pathlib import Path
from typing import Any

from rich.logging import RichHandler

from .utils import atomic_write

SUMMARY_HEADER = [
    "job_id",
    "timestamp",
    "status",
    "files",
    "bytes",
    "batches",
    "retries",
    "error_code",
]


@dataclass(slots=True)
class DispatchLogEntry:
    job_id: str
    batch_id: str
    lane: str
    attempt: int
    status: str
    account_id: str | None
    files: int
    size_bytes: int
    error_code: str | None = None
    remote_job_id: str | None = None
    elapsed_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DispatchLogger:
    def __init__(self, log_file: Path) -> None:
        self._log_file = log_file
        self._lock = threading.Lock()

    def append(self, entry: DispatchLogEntry) -> None:
        line = json.dumps(entry.to_dict(), ensure_ascii=False)
        with self._lock:
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
            with self._log_file.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


@dataclass(slots=True)
class JobSummary:
    job_id: str
    timestamp: float = field(default_factory=time.time)
    status: str = "pending"
    files: int = 0
    size_bytes: int = 0
    batches: int = 0
    retries: int = 0
    error_code: str | None = None

    def as_row(self) -> list[str]:
        return [
            self.job_id,
            time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp)),
            self.status,
            str(self.files),
            str(self.size_bytes),
            str(self.batches),
            str(self.retries),
            self.error_code or "",
        ]


def write_summary_csv(path: Path, header: list[str], rows: list[list[str]]) -> None:
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(header)
    writer.writerows(rows)
    atomic_write(path, buffer.getvalue())


def append_summary(path: Path, summary: JobSummary) -> None:
    rows: list[list[str]] = []
    header = SUMMARY_HEADER
    if path.exists():
        with path.open("r", encoding="utf-8", newline="") as handle:
            existing = list(csv.reader(handle))
        if existing:
            header, rows = existing[0], existing[1:]
    rows.append(summary.as_row())
    write_summary_csv(path, header, rows)


def init_logger(level: str = "INFO") -> logging.Logger:
    """Install a rich console handler on the root logger once per process."""

    root = logging.getLogger()
    if getattr(root, "_laminar_inited", False):
        return logging.getLogger("laminar")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = RichHandler(rich_tracebacks=True, show_path=False)
    handler.setFormatter(logging.Formatter("%(name)s - %(message)s"))
    root.addHandler(handler)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    root._laminar_inited = True  # type: ignore[attr-defined]
    return logging.getLogger("laminar")


__all__ = [
    "DispatchLogEntry",
    "DispatchLogger",
    "JobSummary",
    "SUMMARY_HEADER",
    "append_summary",
    "init_logger",
    "write_summary_csv",
]
