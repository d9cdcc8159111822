"""Domain models for transfer planning."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator


class Action(str, Enum):
    TRANSFER = "transfer"
    CONVERT = "convert"
    LINK = "link"
    COMPRESS = "compress"
    IGNORE = "ignore"


class Lane(str, Enum):
    EXPRESS = "express"
    CONVERT = "convert"
    GHOST = "ghost"
    COMPRESS = "compress"


class FilterMode(str, Enum):
    NONE = "none"
    SMART = "smart"
    CODE_CLEAN = "code_clean"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}[self]


@dataclass(frozen=True, slots=True)
class FileEntry:
    """A single enumerated source file and the action decided for it."""

    name: str
    size: int
    extension: str
    action: Action
    path: str

    @property
    def format(self) -> str:
        return self.extension.lstrip(".").lower()


@dataclass(slots=True)
class LaneAssignment:
    """Disjoint partition of non-ignored files into work lanes."""

    express: tuple[FileEntry, ...] = ()
    convert: tuple[FileEntry, ...] = ()
    ghost: tuple[FileEntry, ...] = ()
    compress: tuple[FileEntry, ...] = ()

    def __getitem__(self, lane: Lane) -> tuple[FileEntry, ...]:
        return getattr(self, Lane(lane).value)

    def items(self) -> Iterator[tuple[Lane, tuple[FileEntry, ...]]]:
        for lane in Lane:
            yield lane, self[lane]

    @property
    def total_files(self) -> int:
        return sum(len(files) for _, files in self.items())

    @property
    def total_bytes(self) -> int:
        return sum(entry.size for _, files in self.items() for entry in files)

    def counts(self) -> dict[str, int]:
        return {lane.value: len(files) for lane, files in self.items()}


@dataclass(slots=True)
class ConversionPlan:
    """Transform plan produced by the refinery for one file."""

    input_format: str
    output_format: str
    estimated_size: int
    options: dict[str, Any] = field(default_factory=dict)
    algorithm: str | None = None
    compression_level: int | None = None
    output_extension: str | None = None

    @property
    def is_compression(self) -> bool:
        return self.algorithm is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "input_format": self.input_format,
            "output_format": self.output_format,
            "estimated_size": self.estimated_size,
            "options": dict(self.options),
            "algorithm": self.algorithm,
            "compression_level": self.compression_level,
            "output_extension": self.output_extension,
        }


__all__ = [
    "Action",
    "ConversionPlan",
    "FileEntry",
    "FilterMode",
    "Lane",
    "LaneAssignment",
    "Priority",
]
