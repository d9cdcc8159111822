from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum

from .config import JobDefaults
from .errors import ErrorKind, InvalidTransitionError, JobValidationError
from .models import FilterMode
from .utils import generate_job_id, iso, utc_now


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}


ALLOWED_TRANSITIONS: frozenset[tuple[JobStatus, JobStatus]] = frozenset(
    {
        (JobStatus.PENDING, JobStatus.RUNNING),
        (JobStatus.RUNNING, JobStatus.COMPLETED),
        (JobStatus.RUNNING, JobStatus.FAILED),
    }
)


@dataclass(slots=True)
class StreamConfig:
    parallelism: int = 32
    swarm_streams: int = 8
    buffer_size: str = "128M"
    chunk_size: str = "128M"


@dataclass(slots=True)
class TransferJob:
    job_id: str
    source: str
    destination: str
    filter_mode: FilterMode = FilterMode.SMART
    transfers: int = 32
    checkers: int = 64
    stream: StreamConfig = field(default_factory=StreamConfig)
    status: JobStatus = JobStatus.PENDING
    submitted_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    error_code: str | None = None

    def to_payload(self) -> dict[str, object | None]:
        return {
            "job_id": self.job_id,
            "source": self.source,
            "destination": self.destination,
            "filter_mode": self.filter_mode.value,
            "transfers": self.transfers,
            "checkers": self.checkers,
            "stream": asdict(self.stream),
            "status": self.status.value,
            "submitted_at": iso(self.submitted_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "error": self.error,
            "error_code": self.error_code,
        }


def create_job(
    source: str | None,
    destination: str | None,
    *,
    filter_mode: FilterMode | str | None = None,
    transfers: int | None = None,
    checkers: int | None = None,
    parallelism: int | None = None,
    swarm_streams: int | None = None,
    buffer_size: str | None = None,
    chunk_size: str | None = None,
    defaults: JobDefaults | None = None,
) -> TransferJob:
    missing = [
        label
        for label, value in (("source", source), ("destination", destination))
        if value is None or not str(value).strip()
    ]
    if missing:
        raise JobValidationError(f"Missing required parameters: {', '.join(missing)}")
    defaults = defaults or JobDefaults()
    try:
        mode = FilterMode(filter_mode or defaults.filter_mode)
    except ValueError as exc:
        raise JobValidationError(f"Unknown filter mode: {filter_mode}") from exc
    stream = StreamConfig(
        parallelism=_positive("parallelism", parallelism, defaults.parallelism),
        swarm_streams=_positive("swarm_streams", swarm_streams, defaults.swarm_streams),
        buffer_size=defaults.buffer_size if buffer_size is None else buffer_size,
        chunk_size=defaults.chunk_size if chunk_size is None else chunk_size,
    )
    return TransferJob(
        job_id=generate_job_id(),
        source=str(source).strip(),
        destination=str(destination).strip(),
        filter_mode=mode,
        transfers=_positive("transfers", transfers, defaults.transfers),
        checkers=_positive("checkers", checkers, defaults.checkers),
        stream=stream,
    )


def _positive(label: str, value: int | None, default: int) -> int:
    if value is None:
        return default
    if value <= 0:
        raise JobValidationError(f"{label} must be positive, got {value}")
    return value


def transition(
    job: TransferJob,
    target: JobStatus | str,
    reason: str | None = None,
    *,
    kind: ErrorKind | None = None,
    now: datetime | None = None,
) -> TransferJob:
    """Move *job* along a legal lifecycle edge; illegal edges leave it untouched."""

    target = JobStatus(target)
    if (job.status, target) not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(
            f"Job {job.job_id} cannot move from {job.status.value} to {target.value}"
        )
    now = now or utc_now()
    if target is JobStatus.RUNNING:
        job.started_at = now
    elif target is JobStatus.COMPLETED:
        job.completed_at = now
    else:
        job.error = reason or "failed"
        job.error_code = (kind or ErrorKind.ENGINE_ERROR).value
        job.completed_at = now
    job.status = target
    return job


class JobStore:
    """Process-resident registry of transfer jobs; the only writer of job state."""

    def __init__(self, defaults: JobDefaults | None = None) -> None:
        self._defaults = defaults or JobDefaults()
        self._jobs: dict[str, TransferJob] = {}
        self._lock = threading.Lock()

    def create(self, source: str | None, destination: str | None, **options: object) -> TransferJob:
        job = create_job(source, destination, defaults=self._defaults, **options)  # type: ignore[arg-type]
        with self._lock:
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> TransferJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self, limit: int = 50) -> list[TransferJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda job: job.submitted_at)
        if limit <= 0:
            return jobs
        return jobs[-limit:]

    def transition(
        self,
        job_id: str,
        target: JobStatus | str,
        reason: str | None = None,
        *,
        kind: ErrorKind | None = None,
    ) -> TransferJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"Unknown job: {job_id}")
            return transition(job, target, reason, kind=kind)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "JobStatus",
    "JobStore",
    "StreamConfig",
    "TransferJob",
    "create_job",
    "transition",
]
