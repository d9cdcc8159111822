from __future__ import annotations

import os
import re
import secrets
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path


ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGTP]?)(?:i?B)?\s*$", re.IGNORECASE)
_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4, "P": 1024**5}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def generate_job_id(prefix: str = "job") -> str:
    epoch_ms = int(time.time() * 1000)
    return f"{prefix}-{epoch_ms}-{secrets.token_hex(8)}"


def parse_size(value: str | int) -> int:
    """Parse an rclone-style size such as ``128M`` or ``1.5G`` into bytes."""

    if isinstance(value, int):
        return value
    match = SIZE_RE.match(value)
    if not match:
        raise ValueError(f"Unrecognised size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _UNITS[unit.upper()])


def format_bytes(size: int | None) -> str:
    if size is None:
        return "unlimited"
    for threshold, label in ((1024**4, "TB"), (1024**3, "GB"), (1024**2, "MB"), (1024, "KB")):
        if size >= threshold:
            return f"{size / threshold:.2f} {label}"
    return f"{size} B"


def split_extension(name: str) -> str:
    _, ext = os.path.splitext(name)
    return ext.lower()


def atomic_write(path: Path, data: str, encoding: str = "utf-8") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding=encoding) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
    os.replace(tmp.name, path)


__all__ = [
    "ISO_FORMAT",
    "atomic_write",
    "format_bytes",
    "generate_job_id",
    "iso",
    "parse_size",
    "split_extension",
    "utc_now",
]
