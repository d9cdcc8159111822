from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .constants import DEFAULT_CONFIG_PATH, DEFAULT_RC_URL


@dataclass(slots=True)
class RuntimeConfig:
    log_dir: Path | None = None
    summary_csv: str = "summary.csv"
    worker_pool_size: int = 0


@dataclass(slots=True)
class JobDefaults:
    transfers: int = 32
    checkers: int = 64
    filter_mode: str = "smart"
    buffer_size: str = "128M"
    parallelism: int = 32
    swarm_streams: int = 8
    chunk_size: str = "128M"


@dataclass(slots=True)
class DispatchConfig:
    max_in_flight_batches: int = 2
    poll_interval_s: float = 1.0
    batch_timeout_s: float = 3600.0
    memory_budget_bytes: int = 4_000_000_000
    safety_factor: int = 4
    max_batch_size: int = 1000
    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 60_000


@dataclass(slots=True)
class QuotaConfig:
    accounts_dir: Path | None = None
    default_limit_bytes: int | None = None
    reset_interval_hours: int = 24
    reset_utc_offset_hours: int = 0


@dataclass(slots=True)
class EngineConfig:
    url: str = DEFAULT_RC_URL
    timeout_s: float = 60.0
    user: str | None = None
    password: str | None = None


@dataclass(slots=True)
class AppConfig:
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    jobs: JobDefaults = field(default_factory=JobDefaults)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)


def _read_toml(path: Path) -> Mapping[str, object]:
    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _optional_path(value: object | None) -> Path | None:
    if value is None or value == "":
        return None
    return Path(str(value))


def _build_runtime(data: Mapping[str, object] | None) -> RuntimeConfig:
    if not data:
        return RuntimeConfig()
    return RuntimeConfig(
        log_dir=_optional_path(data.get("log_dir")),
        summary_csv=str(data.get("summary_csv", "summary.csv")),
        worker_pool_size=int(data.get("worker_pool_size", 0)),
    )


def _build_jobs(data: Mapping[str, object] | None) -> JobDefaults:
    if not data:
        return JobDefaults()
    return JobDefaults(
        transfers=int(data.get("transfers", 32)),
        checkers=int(data.get("checkers", 64)),
        filter_mode=str(data.get("filter_mode", "smart")),
        buffer_size=str(data.get("buffer_size", "128M")),
        parallelism=int(data.get("parallelism", 32)),
        swarm_streams=int(data.get("swarm_streams", 8)),
        chunk_size=str(data.get("chunk_size", "128M")),
    )


def _build_dispatch(data: Mapping[str, object] | None) -> DispatchConfig:
    if not data:
        return DispatchConfig()
    return DispatchConfig(
        max_in_flight_batches=int(data.get("max_in_flight_batches", 2)),
        poll_interval_s=float(data.get("poll_interval_s", 1.0)),
        batch_timeout_s=float(data.get("batch_timeout_s", 3600.0)),
        memory_budget_bytes=int(data.get("memory_budget_bytes", 4_000_000_000)),
        safety_factor=int(data.get("safety_factor", 4)),
        max_batch_size=int(data.get("max_batch_size", 1000)),
        max_attempts=int(data.get("max_attempts", 5)),
        base_delay_ms=int(data.get("base_delay_ms", 1000)),
        max_delay_ms=int(data.get("max_delay_ms", 60_000)),
    )


def _build_quota(data: Mapping[str, object] | None) -> QuotaConfig:
    if not data:
        return QuotaConfig()
    limit = data.get("default_limit_bytes")
    return QuotaConfig(
        accounts_dir=_optional_path(data.get("accounts_dir")),
        default_limit_bytes=int(limit) if limit is not None else None,
        reset_interval_hours=int(data.get("reset_interval_hours", 24)),
        reset_utc_offset_hours=int(data.get("reset_utc_offset_hours", 0)),
    )


def _build_engine(data: Mapping[str, object] | None) -> EngineConfig:
    if not data:
        return EngineConfig()
    user = data.get("user")
    password = data.get("password")
    return EngineConfig(
        url=str(data.get("url", DEFAULT_RC_URL)),
        timeout_s=float(data.get("timeout_s", 60.0)),
        user=str(user) if user else None,
        password=str(password) if password else None,
    )


def _section(raw: Mapping[str, object], name: str) -> Mapping[str, object] | None:
    value = raw.get(name)
    return value if isinstance(value, Mapping) else None


def load_config(path: Path | None = None) -> AppConfig:
    path = path or DEFAULT_CONFIG_PATH
    raw = _read_toml(path)
    return AppConfig(
        runtime=_build_runtime(_section(raw, "runtime")),
        jobs=_build_jobs(_section(raw, "jobs")),
        dispatch=_build_dispatch(_section(raw, "dispatch")),
        quota=_build_quota(_section(raw, "quota")),
        engine=_build_engine(_section(raw, "engine")),
    )


def dump_config(config: AppConfig) -> str:
    payload = {
        "runtime": {
            "log_dir": str(config.runtime.log_dir) if config.runtime.log_dir else None,
            "summary_csv": config.runtime.summary_csv,
            "worker_pool_size": config.runtime.worker_pool_size,
        },
        "jobs": {
            "transfers": config.jobs.transfers,
            "checkers": config.jobs.checkers,
            "filter_mode": config.jobs.filter_mode,
            "buffer_size": config.jobs.buffer_size,
            "parallelism": config.jobs.parallelism,
            "swarm_streams": config.jobs.swarm_streams,
            "chunk_size": config.jobs.chunk_size,
        },
        "dispatch": {
            "max_in_flight_batches": config.dispatch.max_in_flight_batches,
            "poll_interval_s": config.dispatch.poll_interval_s,
            "batch_timeout_s": config.dispatch.batch_timeout_s,
            "memory_budget_bytes": config.dispatch.memory_budget_bytes,
            "safety_factor": config.dispatch.safety_factor,
            "max_batch_size": config.dispatch.max_batch_size,
            "max_attempts": config.dispatch.max_attempts,
            "base_delay_ms": config.dispatch.base_delay_ms,
            "max_delay_ms": config.dispatch.max_delay_ms,
        },
        "quota": {
            "accounts_dir": str(config.quota.accounts_dir) if config.quota.accounts_dir else None,
            "default_limit_bytes": config.quota.default_limit_bytes,
            "reset_interval_hours": config.quota.reset_interval_hours,
            "reset_utc_offset_hours": config.quota.reset_utc_offset_hours,
        },
        "engine": {
            "url": config.engine.url,
            "timeout_s": config.engine.timeout_s,
        },
    }
    return json.dumps(payload, indent=2)


__all__ = [
    "AppConfig",
    "DispatchConfig",
    "EngineConfig",
    "JobDefaults",
    "QuotaConfig",
    "RuntimeConfig",
    "dump_config",
    "load_config",
]
