from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    file_percent: float
    byte_percent: float

    def as_dict(self) -> dict[str, float]:
        return {"file_percent": self.file_percent, "byte_percent": self.byte_percent}


def _percent(done: int, total: int) -> float:
    # An empty set is already complete.
    if total <= 0:
        return 100.0
    return min(done, total) / total * 100.0


def progress(
    total_files: int,
    transferred_files: int,
    total_bytes: int,
    transferred_bytes: int,
) -> ProgressSnapshot:
    return ProgressSnapshot(
        file_percent=_percent(transferred_files, total_files),
        byte_percent=_percent(transferred_bytes, total_bytes),
    )


__all__ = ["ProgressSnapshot", "progress"]
