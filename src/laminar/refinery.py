"""Conversion and compression planning for the convert and compress lanes.

The refinery never touches file bytes. It decides which transform applies to a
file, estimates the resulting size so quota can be reserved up front, and names
the external tool capability the work has to be routed to.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from .errors import UnsupportedConversionError
from .models import ConversionPlan, FileEntry, Priority


class ToolCapability(str, Enum):
    FFMPEG = "ffmpeg"
    IMAGEMAGICK = "imagemagick"
    COMPRESSOR = "compressor"


@dataclass(frozen=True, slots=True)
class ConversionSpec:
    ratio: float
    tool: ToolCapability


@dataclass(frozen=True, slots=True)
class CompressionSpec:
    suffix: str
    ratio: float
    min_level: int
    max_level: int


AUDIO_FORMATS = frozenset({"wav", "aiff", "aif", "flac", "mp3", "aac", "ogg", "opus"})
VIDEO_FORMATS = frozenset({"avi", "mp4", "mov", "mkv", "webm"})
IMAGE_FORMATS = frozenset({"bmp", "tiff", "tif", "png", "webp", "jpg", "jpeg", "gif"})

CATALOG: dict[tuple[str, str], ConversionSpec] = {
    ("wav", "flac"): ConversionSpec(0.55, ToolCapability.FFMPEG),
    ("aiff", "flac"): ConversionSpec(0.55, ToolCapability.FFMPEG),
    ("aif", "flac"): ConversionSpec(0.55, ToolCapability.FFMPEG),
    ("avi", "mp4"): ConversionSpec(0.5, ToolCapability.FFMPEG),
    ("mov", "mp4"): ConversionSpec(0.5, ToolCapability.FFMPEG),
    ("bmp", "webp"): ConversionSpec(0.15, ToolCapability.IMAGEMAGICK),
    ("tiff", "webp"): ConversionSpec(0.15, ToolCapability.IMAGEMAGICK),
    ("tif", "webp"): ConversionSpec(0.15, ToolCapability.IMAGEMAGICK),
    ("bmp", "png"): ConversionSpec(0.6, ToolCapability.IMAGEMAGICK),
    ("tiff", "png"): ConversionSpec(0.6, ToolCapability.IMAGEMAGICK),
}

COMPRESSORS: dict[str, CompressionSpec] = {
    "zstd": CompressionSpec(".zst", 0.3, 1, 22),
    "gzip": CompressionSpec(".gz", 0.35, 1, 9),
    "xz": CompressionSpec(".xz", 0.25, 0, 9),
}

DEFAULT_TARGETS: dict[str, str] = {
    "wav": "flac",
    "aiff": "flac",
    "aif": "flac",
    "bmp": "webp",
    "tiff": "webp",
    "tif": "webp",
}

DEFAULT_ALGORITHM = "zstd"
DEFAULT_LEVEL = 3


def normalize_format(value: str) -> str:
    return str(getattr(value, "value", value)).strip().lstrip(".").lower()


def supported_conversions() -> list[tuple[str, str]]:
    return list(CATALOG)


def default_target(extension: str) -> str | None:
    return DEFAULT_TARGETS.get(normalize_format(extension))


def estimate_output_size(input_size: int, input_format: str, output_format: str) -> int:
    spec = _lookup(input_format, output_format)
    return int(max(input_size, 0) * spec.ratio)


def convert(
    file: FileEntry,
    target_format: str,
    options: Mapping[str, Any] | None = None,
) -> ConversionPlan:
    input_format = file.format
    output_format = normalize_format(target_format)
    spec = _lookup(input_format, output_format)
    return ConversionPlan(
        input_format=input_format,
        output_format=output_format,
        estimated_size=int(max(file.size, 0) * spec.ratio),
        options=dict(options or {}),
    )


def compress(file: FileEntry, options: Mapping[str, Any] | None = None) -> ConversionPlan:
    opts = dict(options or {})
    algorithm = normalize_format(opts.pop("algorithm", None) or DEFAULT_ALGORITHM)
    spec = COMPRESSORS.get(algorithm)
    if spec is None:
        raise UnsupportedConversionError(f"Unsupported compression algorithm: {algorithm}")
    level_value = opts.pop("level", None)
    level = DEFAULT_LEVEL if level_value is None else int(level_value)
    if not spec.min_level <= level <= spec.max_level:
        raise UnsupportedConversionError(
            f"{algorithm} level {level} outside {spec.min_level}..{spec.max_level}"
        )
    return ConversionPlan(
        input_format=file.format,
        output_format=algorithm,
        estimated_size=int(max(file.size, 0) * spec.ratio),
        options=opts,
        algorithm=algorithm,
        compression_level=level,
        output_extension=f"{file.extension}{spec.suffix}",
    )


def conversion_priority(fmt: str) -> Priority:
    normalized = normalize_format(fmt)
    if normalized in AUDIO_FORMATS:
        return Priority.HIGH
    if normalized in IMAGE_FORMATS:
        return Priority.MEDIUM
    return Priority.LOW


def tool_for(input_format: str, output_format: str) -> ToolCapability | None:
    spec = CATALOG.get((normalize_format(input_format), normalize_format(output_format)))
    return spec.tool if spec else None


def requires_ffmpeg(input_format: str, output_format: str) -> bool:
    return tool_for(input_format, output_format) is ToolCapability.FFMPEG


def requires_imagemagick(input_format: str, output_format: str) -> bool:
    return tool_for(input_format, output_format) is ToolCapability.IMAGEMAGICK


def plan_capability(plan: ConversionPlan) -> ToolCapability | None:
    if plan.is_compression:
        return ToolCapability.COMPRESSOR
    return tool_for(plan.input_format, plan.output_format)


def output_path(path: str, plan: ConversionPlan) -> str:
    if plan.is_compression:
        root, _ = posixpath.splitext(path)
        return f"{root}{plan.output_extension}"
    root, _ = posixpath.splitext(path)
    return f"{root}.{plan.output_format}"


def build_command(plan: ConversionPlan, source: str, destination: str) -> list[str]:
    """Command line an external executor runs to carry out *plan*."""

    if plan.is_compression:
        level = f"-{plan.compression_level}"
        if plan.algorithm == "zstd":
            return ["zstd", level, "-o", destination, source]
        return [str(plan.algorithm), level, "-c", source]
    tool = tool_for(plan.input_format, plan.output_format)
    if tool is ToolCapability.FFMPEG:
        if plan.output_format == "flac":
            return ["ffmpeg", "-i", source, "-c:a", "flac", "-compression_level", "8", destination]
        return ["ffmpeg", "-i", source, "-c:v", "libx264", "-c:a", "aac", destination]
    if tool is ToolCapability.IMAGEMAGICK:
        command = ["convert", source]
        if plan.output_format == "webp":
            quality = plan.options.get("quality")
            if quality is None:
                command += ["-define", "webp:lossless=true"]
            else:
                command += ["-quality", str(quality)]
        command.append(destination)
        return command
    raise UnsupportedConversionError(
        f"No tool for {plan.input_format} -> {plan.output_format}"
    )


def _lookup(input_format: str, output_format: str) -> ConversionSpec:
    key = (normalize_format(input_format), normalize_format(output_format))
    spec = CATALOG.get(key)
    if spec is None:
        raise UnsupportedConversionError(f"Unsupported conversion: {key[0]} -> {key[1]}")
    return spec


__all__ = [
    "AUDIO_FORMATS",
    "CATALOG",
    "COMPRESSORS",
    "IMAGE_FORMATS",
    "ToolCapability",
    "VIDEO_FORMATS",
    "build_command",
    "compress",
    "conversion_priority",
    "convert",
    "default_target",
    "estimate_output_size",
    "output_path",
    "plan_capability",
    "requires_ffmpeg",
    "requires_imagemagick",
    "supported_conversions",
    "tool_for",
]
