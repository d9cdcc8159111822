from __future__ import annotations

import csv
import itertools
import json
import threading
import time
from pathlib import Path
from typing import Any

import pytest

from laminar.config import AppConfig, DispatchConfig, RuntimeConfig
from laminar.engine import EngineJobState, EngineJobStatus
from laminar.errors import EngineError, ErrorKind, JobValidationError
from laminar.events import ALL_JOBS_TOPIC, Event
from laminar.jobs import JobStatus
from laminar.models import Action, FileEntry, Lane
from laminar.orchestrator import GHOST_STUB_BYTES, Orchestrator, plan_transfer
from laminar.quota import AccountStatus, QuotaTracker
from laminar.refinery import ToolCapability
from laminar.utils import split_extension

GIB = 1024**3


def listing(*files: tuple[str, int]) -> list[dict[str, Any]]:
    return [{"Path": path, "Name": path.rsplit("/", 1)[-1], "Size": size, "IsDir": False} for path, size in files]


class FakeEngine:
    def __init__(
        self,
        items: list[dict[str, Any]],
        *,
        failures: list[ErrorKind] | None = None,
        running_polls: int | None = 0,
    ) -> None:
        self.items = items
        self.failures = list(failures or [])
        self.running_polls = running_polls
        self.started: list[dict[str, Any]] = []
        self.stopped: list[str] = []
        self.bandwidth: list[str] = []
        self.max_active = 0
        self._active: set[str] = set()
        self._polls: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def list_remotes(self) -> list[str]:
        return ["src", "dst"]

    def list_files(self, fs: str) -> list[dict[str, Any]]:
        return list(self.items)

    def start_async_copy(self, src_fs: str, dst_fs: str, config: dict[str, Any]) -> str:
        with self._lock:
            if self.failures:
                kind = self.failures.pop(0)
                raise EngineError(kind, f"simulated {kind.value}")
            job_id = str(next(self._ids))
            self.started.append({"job_id": job_id, "src": src_fs, "dst": dst_fs, "config": config})
            self._active.add(job_id)
            self.max_active = max(self.max_active, len(self._active))
            return job_id

    def get_job_status(self, job_id: str) -> EngineJobStatus:
        with self._lock:
            polls = self._polls.get(job_id, 0)
            self._polls[job_id] = polls + 1
            if self.running_polls is None or polls < self.running_polls:
                return EngineJobStatus(job_id=job_id, status=EngineJobState.RUNNING, percentage=50.0)
            self._active.discard(job_id)
        return EngineJobStatus(job_id=job_id, status=EngineJobState.FINISHED, percentage=100.0)

    def stop_job(self, job_id: str) -> None:
        with self._lock:
            self.stopped.append(job_id)
            self._active.discard(job_id)

    def set_bandwidth_limit(self, rate: str) -> None:
        self.bandwidth.append(rate)


class FakeMetrics:
    def get_metrics(self, job_id: str) -> dict[str, Any]:
        return {"avg_speed": 12.0}

    def get_recommendations(self, job_id: str) -> list[dict[str, Any]]:
        return [{"type": "increase_transfers"}]


def build_config(tmp_path: Path | None = None, **dispatch: Any) -> AppConfig:
    options: dict[str, Any] = {"poll_interval_s": 0.0, "base_delay_ms": 1, "max_delay_ms": 1}
    options.update(dispatch)
    runtime = RuntimeConfig(log_dir=tmp_path, worker_pool_size=1)
    return AppConfig(runtime=runtime, dispatch=DispatchConfig(**options))


def run_job(orchestrator: Orchestrator, events: list[Event] | None = None):
    if events is not None:
        orchestrator.bus.subscribe(ALL_JOBS_TOPIC, events.append)
    job = orchestrator.create_job("src:data", "dst:backup")
    return orchestrator.run(job.job_id)


def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached in time")


def test_job_completes_and_routes_files_to_lanes():
    engine = FakeEngine(
        listing(
            ("docs/a.txt", 10),
            ("docs/b.txt", 20),
            ("music/song.wav", 1_000),
            ("db/dump.sql", 20_000_000),
            ("tmp/junk.tmp", 5),
        )
    )
    orchestrator = Orchestrator(build_config(), engine)
    events: list[Event] = []
    try:
        job = run_job(orchestrator, events)
    finally:
        orchestrator.shutdown()
    assert job.status is JobStatus.COMPLETED
    dispatched = {
        path: started["config"]["laminar"]["lane"]
        for started in engine.started
        for path in (rule.lstrip("/") for rule in started["config"]["_filter"]["IncludeRule"])
    }
    assert dispatched == {
        "docs/a.txt": "express",
        "docs/b.txt": "express",
        "music/song.wav": "convert",
        "db/dump.sql": "compress",
    }
    complete = [event for event in events if event.name == "complete"]
    assert complete[0].payload["files"] == 4
    assert complete[0].payload["bytes"] == 20_001_030
    final = [event for event in events if event.name == "progress"][-1]
    assert final.payload["file_percent"] == 100.0
    assert final.payload["byte_percent"] == 100.0


def test_dispatch_config_carries_plans_and_stream_options():
    engine = FakeEngine(listing(("music/song.wav", 1_000)))
    orchestrator = Orchestrator(build_config(), engine)
    try:
        run_job(orchestrator)
    finally:
        orchestrator.shutdown()
    config = engine.started[0]["config"]
    assert config["_config"]["Transfers"] == 32
    assert config["_filter"] == {"IncludeRule": ["/music/song.wav"], "ExcludeRule": ["**"]}
    assert config["_config"]["BufferSize"] == 128 * 1024**2
    assert config["laminar"]["capability"] == "ffmpeg"
    plan = config["laminar"]["plans"][0]
    assert plan["output_format"] == "flac"
    assert plan["output_path"] == "music/song.flac"


def test_progress_is_monotonic():
    engine = FakeEngine(listing(*[(f"f{i}.txt", 100) for i in range(12)]))
    config = build_config(memory_budget_bytes=800, max_in_flight_batches=1)
    orchestrator = Orchestrator(config, engine)
    events: list[Event] = []
    try:
        run_job(orchestrator, events)
    finally:
        orchestrator.shutdown()
    percents = [event.payload["file_percent"] for event in events if event.name == "progress" and "file_percent" in event.payload]
    assert len(percents) == 6
    assert percents == sorted(percents)
    assert percents[-1] == 100.0


def test_in_flight_batches_are_bounded():
    engine = FakeEngine(listing(*[(f"f{i}.txt", 100) for i in range(20)]), running_polls=3)
    config = build_config(memory_budget_bytes=1_600, max_in_flight_batches=2)
    orchestrator = Orchestrator(config, engine)
    try:
        job = run_job(orchestrator)
    finally:
        orchestrator.shutdown()
    assert job.status is JobStatus.COMPLETED
    assert len(engine.started) == 10
    assert 1 <= engine.max_active <= 2


def test_transient_failure_is_retried():
    engine = FakeEngine(listing(("a.txt", 10)), failures=[ErrorKind.RATE_LIMITED])
    orchestrator = Orchestrator(build_config(), engine)
    events: list[Event] = []
    try:
        job = run_job(orchestrator, events)
    finally:
        orchestrator.shutdown()
    assert job.status is JobStatus.COMPLETED
    assert len(engine.started) == 1
    complete = next(event for event in events if event.name == "complete")
    assert complete.payload["retries"] == 1


def test_permanent_failure_fails_without_retry():
    engine = FakeEngine(listing(("a.txt", 10)), failures=[ErrorKind.NOT_FOUND, ErrorKind.NOT_FOUND])
    orchestrator = Orchestrator(build_config(), engine)
    events: list[Event] = []
    try:
        job = run_job(orchestrator, events)
    finally:
        orchestrator.shutdown()
    assert job.status is JobStatus.FAILED
    assert job.error_code == "not_found"
    assert len(engine.failures) == 1
    error = next(event for event in events if event.name == "error")
    assert error.payload["error"] == "not_found"
    assert error.payload["category"] == "permanent"


def test_retries_stop_at_attempt_limit():
    engine = FakeEngine(listing(("a.txt", 10)), failures=[ErrorKind.CONNECTION_TIMEOUT] * 6)
    orchestrator = Orchestrator(build_config(max_attempts=3), engine)
    try:
        job = run_job(orchestrator)
    finally:
        orchestrator.shutdown()
    assert job.status is JobStatus.FAILED
    assert job.error_code == "connection_timeout"
    assert len(engine.failures) == 3


def test_batch_timeout_stops_remote_job():
    engine = FakeEngine(listing(("a.txt", 10)), running_polls=None)
    orchestrator = Orchestrator(build_config(batch_timeout_s=0.0, max_attempts=1), engine)
    try:
        job = run_job(orchestrator)
    finally:
        orchestrator.shutdown()
    assert job.status is JobStatus.FAILED
    assert job.error_code == "connection_timeout"
    assert engine.stopped == ["1"]


def test_rate_limited_account_rotates_to_next(tmp_path):
    tracker = QuotaTracker()
    tracker.add_account(1_000, account_id="a", credential_path=Path("/keys/a.json"))
    tracker.add_account(1_000, account_id="b", credential_path=Path("/keys/b.json"))
    engine = FakeEngine(listing(("a.txt", 100)), failures=[ErrorKind.RATE_LIMITED])
    orchestrator = Orchestrator(build_config(), engine, tracker=tracker)
    try:
        job = run_job(orchestrator)
    finally:
        orchestrator.shutdown()
    assert job.status is JobStatus.COMPLETED
    assert engine.started[0]["dst"] == 'dst,service_account_file="/keys/b.json":backup'
    first, second = tracker.accounts()
    assert first.status is AccountStatus.EXHAUSTED
    assert first.reserved == 0
    assert second.quota_used == 100
    assert second.reserved == 0


def test_quota_exhaustion_fails_job():
    tracker = QuotaTracker()
    tracker.add_account(10, account_id="tiny")
    engine = FakeEngine(listing(("a.txt", 100)))
    orchestrator = Orchestrator(build_config(), engine, tracker=tracker)
    try:
        job = run_job(orchestrator)
    finally:
        orchestrator.shutdown()
    assert job.status is JobStatus.FAILED
    assert job.error_code == "quota_exhausted"
    assert engine.started == []


def test_empty_source_completes_immediately():
    engine = FakeEngine([])
    orchestrator = Orchestrator(build_config(), engine)
    events: list[Event] = []
    try:
        job = run_job(orchestrator, events)
    finally:
        orchestrator.shutdown()
    assert job.status is JobStatus.COMPLETED
    assert engine.started == []
    assert [event.name for event in events][-1] == "complete"


def test_abort_stops_in_flight_work():
    engine = FakeEngine(listing(("a.txt", 10)), running_polls=None)
    orchestrator = Orchestrator(build_config(poll_interval_s=0.01), engine)
    try:
        job = orchestrator.submit("src:data", "dst:backup")
        wait_until(lambda: bool(engine.started))
        assert orchestrator.abort(job.job_id)
        final = orchestrator.wait(job.job_id, timeout=5)
    finally:
        orchestrator.shutdown()
    assert final.status is JobStatus.FAILED
    assert final.error == "aborted"
    assert final.error_code == "aborted"
    assert "1" in engine.stopped
    assert not orchestrator.abort(job.job_id)


def test_subscriber_may_abort_from_progress_event():
    engine = FakeEngine(listing(*[(f"f{i}.txt", 100) for i in range(6)]))
    config = build_config(memory_budget_bytes=800, max_in_flight_batches=1)
    orchestrator = Orchestrator(config, engine)
    aborted: list[bool] = []

    def _abort_on_progress(event: Event) -> None:
        if event.name == "progress" and "file_percent" in event.payload and not aborted:
            aborted.append(orchestrator.abort(event.payload["job_id"]))

    orchestrator.bus.subscribe(ALL_JOBS_TOPIC, _abort_on_progress)
    try:
        job = orchestrator.submit("src:data", "dst:backup")
        final = orchestrator.wait(job.job_id, timeout=5)
    finally:
        orchestrator.shutdown()
    assert aborted == [True]
    assert final.status is JobStatus.FAILED
    assert final.error_code == "aborted"
    assert len(engine.started) < 3


def test_unexpected_engine_error_releases_reservation():
    class BrokenStatusEngine(FakeEngine):
        def get_job_status(self, job_id: str) -> EngineJobStatus:
            raise ValueError("malformed status")

    tracker = QuotaTracker()
    tracker.add_account(1_000, account_id="a")
    engine = BrokenStatusEngine(listing(("a.txt", 100)))
    orchestrator = Orchestrator(build_config(), engine, tracker=tracker)
    try:
        job = orchestrator.create_job("src:data", "dst:backup")
        with pytest.raises(ValueError):
            orchestrator.run(job.job_id)
    finally:
        orchestrator.shutdown()
    account = tracker.accounts()[0]
    assert account.reserved == 0
    assert account.quota_used == 0
    failed = orchestrator.get(job.job_id)
    assert failed.status is JobStatus.FAILED
    assert failed.error_code == "engine_error"


def test_wait_reraises_unexpected_worker_error():
    class BrokenListingEngine(FakeEngine):
        def list_files(self, fs: str) -> list[dict[str, Any]]:
            raise RuntimeError("listing exploded")

    orchestrator = Orchestrator(build_config(), BrokenListingEngine([]))
    try:
        job = orchestrator.submit("src:data", "dst:backup")
        with pytest.raises(RuntimeError, match="listing exploded"):
            orchestrator.wait(job.job_id, timeout=5)
    finally:
        orchestrator.shutdown()
    failed = orchestrator.get(job.job_id)
    assert failed.status is JobStatus.FAILED
    assert failed.error_code == "engine_error"


def test_abort_before_run_fails_job():
    orchestrator = Orchestrator(build_config(), FakeEngine(listing(("a.txt", 10))))
    try:
        job = orchestrator.create_job("src:", "dst:")
        assert orchestrator.abort(job.job_id)
        final = orchestrator.run(job.job_id)
    finally:
        orchestrator.shutdown()
    assert final.status is JobStatus.FAILED
    assert final.error_code == "aborted"
    assert not orchestrator.abort("unknown")


def test_invalid_submission_is_rejected_synchronously():
    orchestrator = Orchestrator(build_config(), FakeEngine([]))
    try:
        with pytest.raises(JobValidationError):
            orchestrator.submit(None, "dst:")
        assert orchestrator.list_jobs() == []
    finally:
        orchestrator.shutdown()


def test_logs_dispatch_attempts_and_summary(tmp_path):
    engine = FakeEngine(listing(("a.txt", 10)), failures=[ErrorKind.CONNECTION_TIMEOUT])
    orchestrator = Orchestrator(build_config(tmp_path), engine)
    try:
        job = run_job(orchestrator)
    finally:
        orchestrator.shutdown()
    entries = [json.loads(line) for line in (tmp_path / f"{job.job_id}.jsonl").read_text().splitlines()]
    assert [(entry["attempt"], entry["status"]) for entry in entries] == [(1, "failure"), (2, "success")]
    assert entries[0]["error_code"] == "connection_timeout"
    with (tmp_path / "summary.csv").open(newline="") as handle:
        rows = list(csv.reader(handle))
    assert rows[1][0] == job.job_id
    assert rows[1][2] == "completed"
    assert rows[1][6] == "1"


def test_pause_resume_and_describe():
    engine = FakeEngine(listing(("a.txt", 10)))
    orchestrator = Orchestrator(build_config(), engine, metrics=FakeMetrics())
    try:
        orchestrator.pause()
        orchestrator.resume()
        job = run_job(orchestrator)
        details = orchestrator.describe(job.job_id)
    finally:
        orchestrator.shutdown()
    assert engine.bandwidth == ["0", "off"]
    assert details["status"] == "completed"
    assert details["metrics"] == {"avg_speed": 12.0}
    assert details["recommendations"] == [{"type": "increase_transfers"}]
    assert details["progress"]["file_percent"] == 100.0


def entry(name: str, size: int, action: Action) -> FileEntry:
    return FileEntry(name=name, size=size, extension=split_extension(name), action=action, path=name)


def test_plan_orders_conversions_and_groups_by_tool():
    files = [
        entry("scan.bmp", 100, Action.CONVERT),
        entry("song.wav", 100, Action.CONVERT),
        entry("track.aiff", 100, Action.CONVERT),
        entry("notes.txt", 100, Action.TRANSFER),
    ]
    plan = plan_transfer(files, DispatchConfig())
    convert_batches = [batch for batch in plan.batches if batch.lane is Lane.CONVERT]
    assert [batch.capability for batch in convert_batches] == [ToolCapability.FFMPEG, ToolCapability.IMAGEMAGICK]
    assert [item.name for item in convert_batches[0].files] == ["song.wav", "track.aiff"]
    assert plan.batches[0].lane is Lane.EXPRESS
    assert set(plan.plans) == {"scan.bmp", "song.wav", "track.aiff"}


def test_plan_sizes_batches_from_memory_budget():
    files = [entry(f"f{i}.txt", 100, Action.TRANSFER) for i in range(5)]
    files.append(entry("skip.tmp", 100, Action.IGNORE))
    plan = plan_transfer(files, DispatchConfig(memory_budget_bytes=800, max_in_flight_batches=1))
    assert [len(batch.files) for batch in plan.batches] == [2, 2, 1]
    assert plan.ignored == 1


def test_ghost_batches_reserve_stub_bytes():
    plan = plan_transfer([entry("disk.img", 6 * GIB, Action.LINK)], DispatchConfig())
    assert plan.batches[0].lane is Lane.GHOST
    assert plan.batches[0].estimated_bytes == GHOST_STUB_BYTES
    assert plan.lanes.total_bytes == 6 * GIB


def test_preflight_reports_quota_shortfall():
    tracker = QuotaTracker()
    tracker.add_account(500, account_id="a")
    engine = FakeEngine(listing(("a.txt", 400), ("b.txt", 300), ("junk.tmp", 1)))
    orchestrator = Orchestrator(build_config(), engine, tracker=tracker)
    seen: list[Event] = []
    orchestrator.bus.subscribe("preflight:check-1", seen.append)
    try:
        result = orchestrator.preflight("src:", check_id="check-1")
    finally:
        orchestrator.shutdown()
    assert result["status"] == "insufficient_quota"
    assert result["files"] == 2
    assert result["ignored"] == 1
    assert result["estimated_bytes"] == 700
    assert result["remaining_bytes"] == 500
    assert seen[0].payload == result
    assert engine.started == []
