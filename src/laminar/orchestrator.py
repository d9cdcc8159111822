"""Transfer orchestration: enumerate, partition, plan, batch, dispatch, retry."""

from __future__ import annotations

import itertools
import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterator, Sequence, TypeVar

from . import refinery
from .classifier import entries_from_listing
from .config import AppConfig, DispatchConfig
from .engine import (
    EngineJobState,
    EngineJobStatus,
    MetricsSource,
    TransferEngine,
    bind_account,
    classify_error_text,
    path_filter,
)
from .errors import (
    EngineError,
    ErrorKind,
    JobAbortedError,
    LaminarError,
    NotFoundError,
    UnsupportedConversionError,
)
from .events import EventBus, TransferNotifier
from .jobs import JobStatus, JobStore, TransferJob
from .lanes import assign, average_size, batch_size, chunk
from .logging import DispatchLogEntry, DispatchLogger, JobSummary, append_summary
from .models import ConversionPlan, FileEntry, Lane, LaneAssignment
from .progress import ProgressSnapshot, progress
from .quota import Account, QuotaTracker
from .retry import RetryPolicy
from .utils import generate_job_id, parse_size

logger = logging.getLogger(__name__)

T = TypeVar("T")

GHOST_STUB_BYTES = 512
DISPATCH_ORDER: tuple[Lane, ...] = (Lane.EXPRESS, Lane.GHOST, Lane.COMPRESS, Lane.CONVERT)


@dataclass(slots=True)
class Batch:
    batch_id: str
    lane: Lane
    files: tuple[FileEntry, ...]
    plans: tuple[ConversionPlan | None, ...]
    capability: refinery.ToolCapability | None = None

    @property
    def size_bytes(self) -> int:
        return sum(entry.size for entry in self.files)

    @property
    def estimated_bytes(self) -> int:
        if self.lane is Lane.GHOST:
            return GHOST_STUB_BYTES * len(self.files)
        return sum(
            plan.estimated_size if plan is not None else entry.size
            for entry, plan in zip(self.files, self.plans)
        )

    def dispatch_config(self, job: TransferJob, account: Account | None) -> dict[str, Any]:
        return {
            "_config": {
                "Transfers": job.transfers,
                "Checkers": job.checkers,
                "BufferSize": parse_size(job.stream.buffer_size),
                "MultiThreadStreams": job.stream.swarm_streams,
            },
            "_filter": path_filter(entry.path for entry in self.files),
            "laminar": {
                "job_id": job.job_id,
                "batch_id": self.batch_id,
                "lane": self.lane.value,
                "account_id": account.account_id if account else None,
                "capability": self.capability.value if self.capability else None,
                "plans": [
                    {
                        "path": entry.path,
                        "output_path": refinery.output_path(entry.path, plan),
                        **plan.as_dict(),
                    }
                    for entry, plan in zip(self.files, self.plans)
                    if plan is not None
                ],
            },
        }


@dataclass(slots=True)
class TransferPlan:
    entries: list[FileEntry]
    lanes: LaneAssignment
    plans: dict[str, ConversionPlan]
    batches: list[Batch]

    @property
    def ignored(self) -> int:
        return len(self.entries) - self.lanes.total_files


@dataclass(slots=True)
class JobHandle:
    job_id: str
    halt: threading.Event = field(default_factory=threading.Event)
    aborted: bool = False
    total_files: int = 0
    total_bytes: int = 0
    done_files: int = 0
    done_bytes: int = 0
    batches: int = 0
    retries: int = 0
    remote_jobs: set[str] = field(default_factory=set)
    last_progress: dict[str, Any] = field(default_factory=dict)
    dispatch_log: DispatchLogger | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)
    publish_lock: threading.Lock = field(default_factory=threading.Lock)

    def ensure_active(self) -> None:
        if self.halt.is_set():
            raise JobAbortedError()


def plan_transfer(entries: Sequence[FileEntry], dispatch: DispatchConfig, *, job_id: str = "plan") -> TransferPlan:
    lanes = assign(entries)
    plans: dict[str, ConversionPlan] = {}
    for entry in lanes.convert:
        target = refinery.default_target(entry.extension)
        if target is None:
            raise UnsupportedConversionError(f"No conversion target for {entry.path}")
        plans[entry.path] = refinery.convert(entry, target)
    for entry in lanes.compress:
        plans[entry.path] = refinery.compress(entry)
    batches = list(_build_batches(job_id, lanes, plans, dispatch))
    return TransferPlan(entries=list(entries), lanes=lanes, plans=plans, batches=batches)


def _build_batches(
    job_id: str,
    lanes: LaneAssignment,
    plans: dict[str, ConversionPlan],
    dispatch: DispatchConfig,
) -> Iterator[Batch]:
    per_batch_memory = dispatch.memory_budget_bytes // max(1, dispatch.max_in_flight_batches)
    counter = itertools.count(1)
    for lane in DISPATCH_ORDER:
        files: Sequence[FileEntry] = lanes[lane]
        if not files:
            continue
        if lane is Lane.CONVERT:
            files = sorted(files, key=lambda entry: refinery.conversion_priority(entry.format).rank)
        size = batch_size(
            average_size(files),
            per_batch_memory,
            safety_factor=dispatch.safety_factor,
            upper_bound=dispatch.max_batch_size,
        )
        groups = itertools.groupby(files, key=lambda entry: _capability(plans.get(entry.path)))
        for capability, members in groups:
            for group in chunk(list(members), size):
                yield Batch(
                    batch_id=f"{job_id}-{lane.value}-{next(counter):04d}",
                    lane=lane,
                    files=group,
                    plans=tuple(plans.get(entry.path) for entry in group),
                    capability=capability,
                )


def _capability(plan: ConversionPlan | None) -> refinery.ToolCapability | None:
    return refinery.plan_capability(plan) if plan is not None else None


class Orchestrator:
    def __init__(
        self,
        config: AppConfig,
        engine: TransferEngine,
        *,
        tracker: QuotaTracker | None = None,
        store: JobStore | None = None,
        bus: EventBus | None = None,
        metrics: MetricsSource | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._config = config
        self._engine = engine
        self._tracker = tracker or QuotaTracker(
            reset_interval=timedelta(hours=config.quota.reset_interval_hours),
            utc_offset_hours=config.quota.reset_utc_offset_hours,
        )
        self._store = store or JobStore(config.jobs)
        self.bus = bus or EventBus()
        self._notifier = TransferNotifier(self.bus)
        self._metrics = metrics
        dispatch = config.dispatch
        self._policy = retry_policy or RetryPolicy(
            base_delay_ms=dispatch.base_delay_ms,
            max_delay_ms=dispatch.max_delay_ms,
            max_attempts=dispatch.max_attempts,
        )
        pool_size = config.runtime.worker_pool_size
        if pool_size <= 0:
            pool_size = min(4, max(1, os.cpu_count() or 1))
        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="job-worker")
        self._handles: dict[str, JobHandle] = {}
        self._futures: dict[str, Future[TransferJob]] = {}
        self._lock = threading.Lock()

    @property
    def tracker(self) -> QuotaTracker:
        return self._tracker

    @property
    def notifier(self) -> TransferNotifier:
        return self._notifier

    def create_job(self, source: str | None, destination: str | None, **options: Any) -> TransferJob:
        job = self._store.create(source, destination, **options)
        handle = JobHandle(job_id=job.job_id)
        if self._config.runtime.log_dir is not None:
            handle.dispatch_log = DispatchLogger(self._config.runtime.log_dir / f"{job.job_id}.jsonl")
        with self._lock:
            self._handles[job.job_id] = handle
        return job

    def submit(self, source: str | None, destination: str | None, **options: Any) -> TransferJob:
        job = self.create_job(source, destination, **options)
        future = self._executor.submit(self.run, job.job_id)
        with self._lock:
            self._futures[job.job_id] = future
        return job

    def wait(self, job_id: str, timeout: float | None = None) -> TransferJob:
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        job = self._store.get(job_id)
        if job is None:
            raise NotFoundError(f"Unknown job: {job_id}")
        return job

    def get(self, job_id: str) -> TransferJob | None:
        return self._store.get(job_id)

    def list_jobs(self, limit: int = 50) -> list[TransferJob]:
        return self._store.list_jobs(limit)

    def describe(self, job_id: str) -> dict[str, Any]:
        job = self._store.get(job_id)
        if job is None:
            raise NotFoundError(f"Unknown job: {job_id}")
        payload: dict[str, Any] = job.to_payload()
        handle = self._handle(job_id)
        payload["progress"] = dict(handle.last_progress) if handle else {}
        if self._metrics is not None:
            try:
                payload["metrics"] = self._metrics.get_metrics(job_id)
            except NotFoundError:
                payload["metrics"] = None
            try:
                payload["recommendations"] = self._metrics.get_recommendations(job_id)
            except LaminarError as exc:
                payload["recommendations"] = exc.to_payload()
        return payload

    def abort(self, job_id: str) -> bool:
        job = self._store.get(job_id)
        handle = self._handle(job_id)
        if job is None or handle is None or job.status.terminal:
            return False
        with handle.lock:
            handle.aborted = True
            remote_jobs = list(handle.remote_jobs)
        handle.halt.set()
        for remote_id in remote_jobs:
            self._stop_remote(remote_id)
        logger.info("job.abort_requested id=%s in_flight=%d", job_id, len(remote_jobs))
        return True

    def pause(self) -> None:
        self._engine.set_bandwidth_limit("0")

    def resume(self) -> None:
        self._engine.set_bandwidth_limit("off")

    def run(self, job_id: str) -> TransferJob:
        """Execute a pending job to a terminal state on the calling thread."""

        handle = self._handle(job_id)
        if handle is None:
            raise NotFoundError(f"Unknown job: {job_id}")
        job = self._store.transition(job_id, JobStatus.RUNNING)
        summary = JobSummary(job_id=job_id, status=JobStatus.RUNNING.value)
        self._notifier.progress(job_id, {"status": JobStatus.RUNNING.value})
        try:
            handle.ensure_active()
            plan = self.plan(job, handle)
            handle.total_files = plan.lanes.total_files
            handle.total_bytes = plan.lanes.total_bytes
            logger.info(
                "job.planned id=%s files=%d ignored=%d batches=%d lanes=%s",
                job_id,
                handle.total_files,
                plan.ignored,
                len(plan.batches),
                plan.lanes.counts(),
            )
            self._dispatch_all(job, handle, plan.batches)
        except LaminarError as exc:
            return self._fail(job_id, handle, summary, exc)
        except Exception as exc:
            self._fail(job_id, handle, summary, EngineError(ErrorKind.ENGINE_ERROR, str(exc)))
            raise
        job = self._store.transition(job_id, JobStatus.COMPLETED)
        result = {
            "status": job.status.value,
            "files": handle.done_files,
            "bytes": handle.done_bytes,
            "batches": handle.batches,
            "retries": handle.retries,
        }
        self._notifier.complete(job_id, result)
        self._record_summary(summary, handle, JobStatus.COMPLETED, None)
        logger.info("job.completed id=%s files=%d bytes=%d", job_id, handle.done_files, handle.done_bytes)
        return job

    def plan(self, job: TransferJob, handle: JobHandle | None = None) -> TransferPlan:
        listing = self._call_with_retry(handle, "list_files", lambda: self._engine.list_files(job.source))
        entries = entries_from_listing(listing, job.filter_mode)
        return plan_transfer(entries, self._config.dispatch, job_id=job.job_id)

    def preflight(self, source: str, *, filter_mode: str | None = None, check_id: str | None = None) -> dict[str, Any]:
        """Plan *source* without dispatching and report whether quota covers it."""

        check_id = check_id or generate_job_id("check")
        listing = self._call_with_retry(None, "list_files", lambda: self._engine.list_files(source))
        entries = entries_from_listing(listing, filter_mode or self._config.jobs.filter_mode)
        transfer_plan = plan_transfer(entries, self._config.dispatch, job_id=check_id)
        estimated = sum(batch.estimated_bytes for batch in transfer_plan.batches)
        remaining = self._tracker.total_remaining() if self._tracker.has_accounts else None
        result = {
            "status": "ready" if remaining is None or remaining >= estimated else "insufficient_quota",
            "files": transfer_plan.lanes.total_files,
            "ignored": transfer_plan.ignored,
            "bytes": transfer_plan.lanes.total_bytes,
            "estimated_bytes": estimated,
            "remaining_bytes": remaining,
            "lanes": transfer_plan.lanes.counts(),
            "batches": len(transfer_plan.batches),
        }
        self._notifier.preflight(check_id, result)
        return result

    def shutdown(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            handle.halt.set()
        self._executor.shutdown(wait=False)

    def _dispatch_all(self, job: TransferJob, handle: JobHandle, batches: Sequence[Batch]) -> None:
        limit = max(1, self._config.dispatch.max_in_flight_batches)
        errors: list[BaseException] = []

        def _collect(done: set[Future[None]]) -> None:
            for future in done:
                exc = future.exception()
                if exc is not None:
                    errors.append(exc)
                    handle.halt.set()

        in_flight: set[Future[None]] = set()
        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="batch-worker") as pool:
            for batch in batches:
                if handle.halt.is_set():
                    break
                if len(in_flight) >= limit:
                    done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    _collect(done)
                    if handle.halt.is_set():
                        break
                in_flight.add(pool.submit(self._dispatch_batch, job, handle, batch))
            done, _ = wait(in_flight)
            _collect(done)
        if handle.aborted:
            raise JobAbortedError()
        failures = [exc for exc in errors if not isinstance(exc, JobAbortedError)]
        if failures:
            raise failures[0]
        if errors:
            raise errors[0]

    def _dispatch_batch(self, job: TransferJob, handle: JobHandle, batch: Batch) -> None:
        attempt = 1
        estimate = batch.estimated_bytes
        while True:
            handle.ensure_active()
            account = self._tracker.select_account(estimate) if self._tracker.has_accounts else None
            started = time.perf_counter()
            try:
                status = self._run_remote(job, handle, batch, account)
            except LaminarError as exc:
                if account is not None:
                    self._tracker.release(account, estimate)
                    if exc.kind is ErrorKind.RATE_LIMITED:
                        self._tracker.mark_exhausted(account)
                self._log_attempt(handle, batch, attempt, account, "failure", started, error=exc)
                if handle.halt.is_set():
                    raise JobAbortedError() from exc
                if not self._policy.should_retry(exc.kind, attempt):
                    raise
                delay_ms = self._policy.backoff_delay(attempt)
                logger.warning(
                    "batch.retry id=%s attempt=%d kind=%s delay_ms=%d",
                    batch.batch_id,
                    attempt,
                    exc.kind.value,
                    delay_ms,
                )
                with handle.lock:
                    handle.retries += 1
                if handle.halt.wait(delay_ms / 1000):
                    raise JobAbortedError() from exc
                attempt += 1
                continue
            except BaseException:
                if account is not None:
                    self._tracker.release(account, estimate)
                raise
            actual = status.transferred or estimate
            if account is not None:
                self._tracker.attribute(account, actual, reserved=estimate)
            self._log_attempt(handle, batch, attempt, account, "success", started, remote_job_id=status.job_id)
            self._complete_batch(job, handle, batch)
            return

    def _run_remote(
        self,
        job: TransferJob,
        handle: JobHandle,
        batch: Batch,
        account: Account | None,
    ) -> EngineJobStatus:
        dispatch = self._config.dispatch
        destination = bind_account(job.destination, account.credential_path if account else None)
        remote_id = self._engine.start_async_copy(job.source, destination, batch.dispatch_config(job, account))
        with handle.lock:
            handle.remote_jobs.add(remote_id)
        deadline = time.monotonic() + dispatch.batch_timeout_s
        try:
            while True:
                status = self._engine.get_job_status(remote_id)
                self._notifier.file_progress(
                    job.job_id,
                    {"batch_id": batch.batch_id, "lane": batch.lane.value, "files": len(batch.files), **status.as_dict()},
                )
                if status.finished:
                    if status.status is EngineJobState.FAILED:
                        raise EngineError(classify_error_text(status.error), status.error or "remote job failed")
                    return status
                if time.monotonic() >= deadline:
                    self._stop_remote(remote_id)
                    raise EngineError(
                        ErrorKind.CONNECTION_TIMEOUT,
                        f"Batch {batch.batch_id} exceeded {dispatch.batch_timeout_s:.0f}s",
                    )
                if handle.halt.wait(dispatch.poll_interval_s):
                    self._stop_remote(remote_id)
                    raise JobAbortedError()
        finally:
            with handle.lock:
                handle.remote_jobs.discard(remote_id)

    def _complete_batch(self, job: TransferJob, handle: JobHandle, batch: Batch) -> None:
        # publish_lock orders progress events; handle.lock is released before subscribers run.
        with handle.publish_lock:
            update = self._record_batch(job, handle, batch)
            self._notifier.progress(job.job_id, update)

    def _record_batch(self, job: TransferJob, handle: JobHandle, batch: Batch) -> dict[str, Any]:
        with handle.lock:
            handle.done_files += len(batch.files)
            handle.done_bytes += batch.size_bytes
            handle.batches += 1
            snapshot: ProgressSnapshot = progress(
                handle.total_files, handle.done_files, handle.total_bytes, handle.done_bytes
            )
            update = {
                "status": job.status.value,
                "lane": batch.lane.value,
                "transferred_files": handle.done_files,
                "total_files": handle.total_files,
                "transferred_bytes": handle.done_bytes,
                "total_bytes": handle.total_bytes,
                **snapshot.as_dict(),
            }
            handle.last_progress = update
        return update

    def _call_with_retry(self, handle: JobHandle | None, label: str, call: Callable[[], T]) -> T:
        attempt = 1
        while True:
            if handle is not None:
                handle.ensure_active()
            try:
                return call()
            except LaminarError as exc:
                if not self._policy.should_retry(exc.kind, attempt):
                    raise
                delay_ms = self._policy.backoff_delay(attempt)
                logger.warning("engine.retry call=%s attempt=%d kind=%s", label, attempt, exc.kind.value)
                if handle is not None:
                    with handle.lock:
                        handle.retries += 1
                    if handle.halt.wait(delay_ms / 1000):
                        raise JobAbortedError() from exc
                else:
                    time.sleep(delay_ms / 1000)
                attempt += 1

    def _fail(self, job_id: str, handle: JobHandle, summary: JobSummary, exc: LaminarError) -> TransferJob:
        job = self._store.transition(job_id, JobStatus.FAILED, str(exc), kind=exc.kind)
        self._notifier.error(job_id, exc.to_payload())
        self._record_summary(summary, handle, JobStatus.FAILED, exc.kind.value)
        logger.error("job.failed id=%s kind=%s reason=%s", job_id, exc.kind.value, exc)
        return job

    def _record_summary(
        self,
        summary: JobSummary,
        handle: JobHandle,
        status: JobStatus,
        error_code: str | None,
    ) -> None:
        if self._config.runtime.log_dir is None:
            return
        summary.status = status.value
        summary.files = handle.done_files
        summary.size_bytes = handle.done_bytes
        summary.batches = handle.batches
        summary.retries = handle.retries
        summary.error_code = error_code
        append_summary(self._config.runtime.log_dir / self._config.runtime.summary_csv, summary)

    def _log_attempt(
        self,
        handle: JobHandle,
        batch: Batch,
        attempt: int,
        account: Account | None,
        status: str,
        started: float,
        *,
        error: LaminarError | None = None,
        remote_job_id: str | None = None,
    ) -> None:
        if handle.dispatch_log is None:
            return
        handle.dispatch_log.append(
            DispatchLogEntry(
                job_id=handle.job_id,
                batch_id=batch.batch_id,
                lane=batch.lane.value,
                attempt=attempt,
                status=status,
                account_id=account.account_id if account else None,
                files=len(batch.files),
                size_bytes=batch.size_bytes,
                error_code=error.kind.value if error else None,
                remote_job_id=remote_job_id,
                elapsed_ms=(time.perf_counter() - started) * 1000,
            )
        )

    def _stop_remote(self, remote_id: str) -> None:
        try:
            self._engine.stop_job(remote_id)
        except EngineError as exc:
            logger.warning("engine.stop_failed remote_id=%s kind=%s", remote_id, exc.kind.value)

    def _handle(self, job_id: str) -> JobHandle | None:
        with self._lock:
            return self._handles.get(job_id)


__all__ = [
    "Batch",
    "GHOST_STUB_BYTES",
    "JobHandle",
    "Orchestrator",
    "TransferPlan",
    "plan_transfer",
]
