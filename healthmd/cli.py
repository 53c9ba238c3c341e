"""Command line interface for healthmd."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from .client import CachedRecordSource, HealthAPIClient, RecordSource
from .config import Config, ConfigError
from .db import Database
from .delivery import BackgroundDeliveryChannel, BackgroundDeliveryConsumer, CacheWatcher
from .history import HistoryStore
from .metrics import PrometheusMetrics
from .models import ExportFrequency
from .notifications import Notifier, describe_failure, describe_result
from .orchestrator import ExportOrchestrator
from .schedule import SchedulePlanner
from .scheduler import ScheduledJob, Scheduler
from .service import ExportService
from .vault import FolderVault, VaultWriter

app = typer.Typer(help="Export daily health metrics into a vault folder")
console = Console()
logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppContext:
    config: Config
    database: Database
    service: ExportService
    metrics: PrometheusMetrics | None = None


def _build_source(config: Config) -> RecordSource:
    if config.api_url:
        return HealthAPIClient(config)
    return CachedRecordSource(config.cache_dir)


def build_service(
    config: Config, database: Database, *, metrics: PrometheusMetrics | None = None
) -> ExportService:
    """Wire the exporter's collaborators together for one process."""

    vault_dir = config.vault_dir or Path(".")
    orchestrator = ExportOrchestrator(
        _build_source(config),
        VaultWriter(
            vault_dir,
            config.health_subfolder,
            filename_format=config.filename_format,
            folder_structure=config.folder_structure,
            write_mode=config.write_mode,
        ),
        fetch_timeout=config.fetch_timeout,
        data_types=config.data_types,
    )
    return ExportService(
        orchestrator,
        FolderVault(config.vault_dir),
        HistoryStore(database),
        SchedulePlanner(database),
        notifier=Notifier(config),
        metrics=metrics,
        background_budget_seconds=config.background_budget_seconds,
    )


@contextmanager
def _app_context(*, with_metrics: bool = False) -> Iterator[AppContext]:
    config = Config.from_env()
    database = Database(config.sqlite_path)
    database.initialize_schema()
    metrics = None
    if with_metrics and config.metrics_port:
        metrics = PrometheusMetrics(port=config.metrics_port)
    service = build_service(config, database, metrics=metrics)
    try:
        yield AppContext(config=config, database=database, service=service, metrics=metrics)
    finally:
        source = service.orchestrator.source
        if isinstance(source, HealthAPIClient):
            source.close()
        database.close()


def _parse_day(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Expected YYYY-MM-DD, got {value!r}") from exc


@app.callback()
def configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def export(
    start: str = typer.Argument(..., help="First day YYYY-MM-DD"),
    end: str | None = typer.Argument(None, help="Last day YYYY-MM-DD (defaults to start)"),
) -> None:
    """Export a range of days into the vault."""

    start_day = _parse_day(start)
    end_day = _parse_day(end) if end else start_day

    def on_progress(current: int, total: int, label: str) -> None:
        typer.echo(f"[{current}/{total}] {label}")

    with _app_context() as ctx:
        result = ctx.service.run_manual_export(start_day, end_day, on_progress=on_progress)
    typer.echo(describe_result(result))
    detail = describe_failure(result)
    if detail:
        typer.echo(detail, err=True)
        raise typer.Exit(code=1)


@app.command()
def scheduled() -> None:
    """Run the regular scheduled export now (yesterday, or the last week)."""

    with _app_context() as ctx:
        result = ctx.service.run_scheduled_export()
    typer.echo(describe_result(result))


@app.command("catch-up")
def catch_up() -> None:
    """Export any days missed since the last successful scheduled run."""

    with _app_context() as ctx:
        outcome = ctx.service.run_catch_up_export()
    typer.echo(f"{outcome.title}: {outcome.message}")
    if not outcome.is_success:
        raise typer.Exit(code=1)


@app.command()
def history(limit: int = typer.Option(20, help="Maximum number of entries to show")) -> None:
    """Show recent export runs, newest first."""

    with _app_context() as ctx:
        entries = ctx.service.history.entries[:limit]
    if not entries:
        typer.echo("No exports recorded yet")
        return
    table = Table(title="Export history")
    table.add_column("When")
    table.add_column("Source")
    table.add_column("Range")
    table.add_column("Result")
    table.add_column("Failed dates")
    for entry in entries:
        table.add_row(
            entry.timestamp.astimezone().strftime("%Y-%m-%d %H:%M"),
            entry.source.value,
            f"{entry.date_range_start.isoformat()} -> {entry.date_range_end.isoformat()}",
            entry.summary,
            ", ".join(
                f"{detail.date_string} ({detail.reason.short_description})"
                for detail in entry.failed_dates
            )
            or "-",
        )
    console.print(table)


@app.command("clear-history")
def clear_history() -> None:
    """Delete all recorded export runs."""

    with _app_context() as ctx:
        ctx.service.history.clear()
    typer.echo("Export history cleared")


@app.command()
def schedule(
    enable: bool | None = typer.Option(None, "--enable/--disable", help="Turn scheduling on or off"),
    frequency: ExportFrequency | None = typer.Option(None, help="daily or weekly"),
    hour: int | None = typer.Option(None, min=0, max=23, help="Preferred hour (0-23)"),
    minute: int | None = typer.Option(None, min=0, max=59, help="Preferred minute (0-59)"),
) -> None:
    """Show or change the recurring export schedule."""

    with _app_context() as ctx:
        planner = ctx.service.planner
        if any(value is not None for value in (enable, frequency, hour, minute)):
            planner.update(
                is_enabled=enable,
                frequency=frequency,
                preferred_hour=hour,
                preferred_minute=minute,
            )
        typer.echo(json.dumps(planner.schedule.to_dict(), indent=2))


@app.command("next-run")
def next_run() -> None:
    """Print when the next scheduled export will run."""

    with _app_context() as ctx:
        description = ctx.service.planner.next_export_description(datetime.now())
    typer.echo(description or "Scheduling is disabled")


@app.command("sync-import")
def sync_import(path: Path = typer.Argument(..., exists=True, dir_okay=False)) -> None:
    """Store records from a sync payload file into the local cache."""

    payload = json.loads(path.read_text(encoding="utf-8"))
    with _app_context() as ctx:
        stored = CachedRecordSource(ctx.config.cache_dir).import_payload(payload)
    typer.echo(f"Stored {stored} record(s)")


@app.command()
def daemon() -> None:
    """Check periodically whether an export is due and run it."""

    with _app_context(with_metrics=True) as ctx:
        if ctx.metrics is not None:
            ctx.metrics.start()
        scheduler = Scheduler(metrics_recorder=ctx.metrics)
        scheduler.add_job(
            ScheduledJob(
                name="export-if-due",
                interval=timedelta(minutes=ctx.config.check_interval_minutes),
                action=ctx.service.run_if_due,
            )
        )
        channel = BackgroundDeliveryChannel()
        watcher = CacheWatcher(ctx.config.cache_dir, channel)
        scheduler.add_job(
            ScheduledJob(name="watch-cache", interval=timedelta(minutes=1), action=watcher.poll)
        )
        consumer = BackgroundDeliveryConsumer(channel, ctx.service)
        consumer.start()
        next_description = ctx.service.planner.next_export_description(datetime.now())
        logger.info("Daemon started; next export %s", next_description or "not scheduled")
        try:
            scheduler.run()
        except KeyboardInterrupt:
            logger.info("Stopping daemon")
        finally:
            scheduler.stop()
            consumer.stop(timeout=5)
            ctx.service.cancel_active()


def main() -> None:  # pragma: no cover - CLI entry point
    try:
        app()
    except ConfigError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise SystemExit(1) from exc


if __name__ == "__main__":  # pragma: no cover
    main()
