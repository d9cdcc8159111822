from __future__ import annotations

from typing import Iterator, Sequence

from .models import Action, FileEntry, Lane, LaneAssignment

DEFAULT_SAFETY_FACTOR = 4
DEFAULT_MAX_BATCH_SIZE = 1000

ACTION_LANES: dict[Action, Lane | None] = {
    Action.TRANSFER: Lane.EXPRESS,
    Action.CONVERT: Lane.CONVERT,
    Action.LINK: Lane.GHOST,
    Action.COMPRESS: Lane.COMPRESS,
    Action.IGNORE: None,
}


def assign(files: Sequence[FileEntry]) -> LaneAssignment:
    buckets: dict[Lane, list[FileEntry]] = {lane: [] for lane in Lane}
    for entry in files:
        lane = ACTION_LANES[Action(entry.action)]
        if lane is not None:
            buckets[lane].append(entry)
    return LaneAssignment(
        express=tuple(buckets[Lane.EXPRESS]),
        convert=tuple(buckets[Lane.CONVERT]),
        ghost=tuple(buckets[Lane.GHOST]),
        compress=tuple(buckets[Lane.COMPRESS]),
    )


def batch_size(
    average_file_size: float,
    available_memory: int,
    *,
    safety_factor: int = DEFAULT_SAFETY_FACTOR,
    upper_bound: int = DEFAULT_MAX_BATCH_SIZE,
) -> int:
    """Number of files per batch that keeps in-flight data within the memory budget."""

    upper_bound = max(1, upper_bound)
    if available_memory <= 0:
        return 1
    if average_file_size <= 0:
        return upper_bound
    raw = int(available_memory // (average_file_size * max(safety_factor, 1)))
    return max(1, min(raw, upper_bound))


def average_size(files: Sequence[FileEntry]) -> float:
    if not files:
        return 0.0
    return sum(entry.size for entry in files) / len(files)


def chunk(files: Sequence[FileEntry], size: int) -> Iterator[tuple[FileEntry, ...]]:
    size = max(1, size)
    for start in range(0, len(files), size):
        yield tuple(files[start : start + size])


__all__ = [
    "ACTION_LANES",
    "DEFAULT_MAX_BATCH_SIZE",
    "DEFAULT_SAFETY_FACTOR",
    "assign",
    "average_size",
    "batch_size",
    "chunk",
]
