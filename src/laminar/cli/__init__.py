from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from ..classifier import entries_from_listing
from ..config import AppConfig, load_config
from ..engine import RcloneClient
from ..errors import LaminarError
from ..events import ALL_JOBS_TOPIC, Event
from ..jobs import JobStatus
from ..logging import init_logger
from ..models import FilterMode
from ..orchestrator import Orchestrator, plan_transfer
from ..quota import QuotaTracker
from ..settings import get_settings
from ..utils import format_bytes, generate_job_id

console = Console()

app = typer.Typer(help="Bulk cloud-to-cloud transfer orchestrator")


def _load_config(path: Path | None) -> AppConfig:
    settings = get_settings()
    init_logger(settings.log_level)
    cfg = load_config(path or settings.config_path)
    if settings.rc_url:
        cfg.engine.url = settings.rc_url
    return cfg


def _tracker(cfg: AppConfig, accounts_dir: Path | None) -> QuotaTracker:
    tracker = QuotaTracker(
        reset_interval=timedelta(hours=cfg.quota.reset_interval_hours),
        utc_offset_hours=cfg.quota.reset_utc_offset_hours,
    )
    folder = accounts_dir or cfg.quota.accounts_dir
    if folder is not None:
        imported = tracker.import_folder(folder, default_limit=cfg.quota.default_limit_bytes)
        console.print(f"Imported {imported} accounts from {folder}")
    return tracker


@app.command()
def plan(
    source: str,
    filter_mode: FilterMode = typer.Option(FilterMode.SMART, "--filter", help="Filter mode"),
    listing_file: Path | None = typer.Option(None, "--listing", help="rclone lsjson output to plan from"),
    config: Path | None = typer.Option(None, "--config", help="Path to laminar.toml"),
) -> None:
    cfg = _load_config(config)
    try:
        if listing_file is not None:
            listing = json.loads(listing_file.read_text(encoding="utf-8"))
        else:
            with RcloneClient(cfg.engine) as engine:
                listing = engine.list_files(source)
        transfer_plan = plan_transfer(entries_from_listing(listing, filter_mode), cfg.dispatch)
    except LaminarError as exc:
        console.print(f"[red]Planning failed[/red]: {exc.kind.value} - {exc}")
        raise typer.Exit(1) from exc
    table = Table(title=f"Lanes for {source}")
    table.add_column("Lane")
    table.add_column("Files", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Batches", justify="right")
    for lane, files in transfer_plan.lanes.items():
        batches = sum(1 for batch in transfer_plan.batches if batch.lane is lane)
        table.add_row(lane.value, str(len(files)), format_bytes(sum(f.size for f in files)), str(batches))
    console.print(table)
    console.print(f"Ignored {transfer_plan.ignored} files; {len(transfer_plan.plans)} files need refinery plans.")


@app.command()
def run(
    source: str,
    destination: str,
    filter_mode: FilterMode = typer.Option(FilterMode.SMART, "--filter", help="Filter mode"),
    transfers: int | None = typer.Option(None, "--transfers", min=1, help="Parallel file transfers"),
    accounts_dir: Path | None = typer.Option(None, "--accounts", help="Folder of service-account JSON files"),
    config: Path | None = typer.Option(None, "--config", help="Path to laminar.toml"),
) -> None:
    cfg = _load_config(config)
    tracker = _tracker(cfg, accounts_dir)
    with RcloneClient(cfg.engine) as engine:
        orchestrator = Orchestrator(cfg, engine, tracker=tracker)

        def _report(event: Event) -> None:
            if event.name == "progress" and "file_percent" in event.payload:
                console.print(
                    f"{event.payload['job_id']}: {event.payload['file_percent']:.1f}% files, "
                    f"{event.payload['byte_percent']:.1f}% bytes"
                )

        orchestrator.bus.subscribe(ALL_JOBS_TOPIC, _report)
        try:
            job = orchestrator.create_job(source, destination, filter_mode=filter_mode, transfers=transfers)
            job = orchestrator.run(job.job_id)
        except LaminarError as exc:
            console.print(f"[red]Transfer rejected[/red]: {exc.kind.value} - {exc}")
            raise typer.Exit(1) from exc
        finally:
            orchestrator.shutdown()
    if job.status is JobStatus.FAILED:
        console.print(f"[red]Transfer failed[/red]: {job.error_code} - {job.error}")
        raise typer.Exit(1)
    console.print(f"[green]Completed[/green]: {job.job_id}")


@app.command()
def accounts(
    folder: Path,
    config: Path | None = typer.Option(None, "--config", help="Path to laminar.toml"),
) -> None:
    cfg = _load_config(config)
    try:
        tracker = _tracker(cfg, folder)
    except NotADirectoryError as exc:
        console.print(f"[red]Not a directory[/red]: {folder}")
        raise typer.Exit(1) from exc
    table = Table(title="Accounts")
    table.add_column("ID")
    table.add_column("Provider")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Status")
    for account in tracker.accounts():
        table.add_row(
            account.account_id,
            account.provider,
            format_bytes(account.quota_used),
            format_bytes(account.quota_limit),
            account.status.value,
        )
    console.print(table)
    console.print(f"Total remaining: {format_bytes(tracker.total_remaining())}")


@app.command()
def remotes(
    config: Path | None = typer.Option(None, "--config", help="Path to laminar.toml"),
) -> None:
    cfg = _load_config(config)
    try:
        with RcloneClient(cfg.engine) as engine:
            names = engine.list_remotes()
    except LaminarError as exc:
        console.print(f"[red]Engine unavailable[/red]: {exc.kind.value} - {exc}")
        raise typer.Exit(1) from exc
    for name in names:
        console.print(name)


@app.command()
def new_job_id() -> None:
    console.print(generate_job_id())


if __name__ == "__main__":
    app()
