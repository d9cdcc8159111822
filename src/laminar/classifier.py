"""Rule-based tagging of enumerated files with the action their lane needs."""

from __future__ import annotations

import posixpath
from typing import Any, Iterable, Mapping

from .models import Action, FileEntry, FilterMode
from .refinery import default_target
from .utils import split_extension

GHOST_LINK_THRESHOLD = 5 * 1024 * 1024 * 1024
COMPRESS_THRESHOLD = 10_000_000

JUNK_EXTENSIONS = frozenset({".tmp", ".log", ".bak"})
JUNK_NAMES = frozenset({".DS_Store", "Thumbs.db"})
COMPRESSIBLE_EXTENSIONS = frozenset({".sql", ".csv", ".json"})
BUILD_DIRECTORIES = frozenset(
    {
        "node_modules",
        "_build",
        "target",
        "deps",
        "vendor",
        ".git",
        ".svn",
        "__pycache__",
        ".sass-cache",
        ".cache",
        ".gradle",
        ".idea",
        ".vscode",
    }
)


def classify(
    name: str,
    size: int,
    extension: str,
    path: str,
    filter_mode: FilterMode | str = FilterMode.SMART,
) -> Action:
    mode = FilterMode(filter_mode)
    if mode is FilterMode.NONE:
        return Action.TRANSFER
    if mode is FilterMode.CODE_CLEAN and _under_build_directory(path):
        return Action.IGNORE
    if extension in JUNK_EXTENSIONS or name in JUNK_NAMES:
        return Action.IGNORE
    if size > GHOST_LINK_THRESHOLD:
        return Action.LINK
    if default_target(extension) is not None:
        return Action.CONVERT
    if extension in COMPRESSIBLE_EXTENSIONS and size > COMPRESS_THRESHOLD:
        return Action.COMPRESS
    return Action.TRANSFER


def entry_from_listing(
    item: Mapping[str, Any],
    filter_mode: FilterMode | str = FilterMode.SMART,
) -> FileEntry | None:
    """Build a tagged entry from one rclone ``operations/list`` item; directories yield None."""

    if item.get("IsDir"):
        return None
    path = str(item.get("Path") or item.get("path") or item.get("Name") or "")
    name = str(item.get("Name") or item.get("name") or posixpath.basename(path))
    size = int(item.get("Size") or item.get("size") or 0)
    extension = split_extension(name)
    return FileEntry(
        name=name,
        size=max(size, 0),
        extension=extension,
        action=classify(name, size, extension, path, filter_mode),
        path=path or name,
    )


def entries_from_listing(
    items: Iterable[Mapping[str, Any]],
    filter_mode: FilterMode | str = FilterMode.SMART,
) -> list[FileEntry]:
    entries: list[FileEntry] = []
    for item in items:
        entry = entry_from_listing(item, filter_mode)
        if entry is not None:
            entries.append(entry)
    return entries


def _under_build_directory(path: str) -> bool:
    parts = [part for part in path.split("/") if part]
    return any(part in BUILD_DIRECTORIES for part in parts[:-1])


__all__ = [
    "BUILD_DIRECTORIES",
    "COMPRESS_THRESHOLD",
    "GHOST_LINK_THRESHOLD",
    "classify",
    "entries_from_listing",
    "entry_from_listing",
]
