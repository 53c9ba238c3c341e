import logging
import threading
import time
from datetime import date, datetime

import pytest
from prometheus_client import CollectorRegistry

from conftest import StubSource, StubVault, StubWriter
from healthmd.client import DeviceLockedError
from healthmd.db import Database
from healthmd.history import HistoryStore
from healthmd.metrics import PrometheusMetrics
from healthmd.models import (
    ExportFrequency,
    ExportResult,
    ExportSource,
    Failure,
    FailureReason,
    HealthRecord,
    NoExportNeeded,
    PartialSuccess,
    Success,
)
from healthmd.notifications import Notification
from healthmd.orchestrator import ExportOrchestrator
from healthmd.schedule import SchedulePlanner
from healthmd.service import ExportService

NOW = datetime(2026, 3, 12, 9, 0)
YESTERDAY = date(2026, 3, 11)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)


class RecordingOrchestrator(ExportOrchestrator):
    def __init__(self, *args: object, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.cancel_events: list[threading.Event] = []

    def export_dates(self, dates, vault, **kwargs):  # type: ignore[no-untyped-def]
        self.cancel_events.append(kwargs["cancel_event"])
        return super().export_dates(dates, vault, **kwargs)


class BlockingSource(StubSource):
    """Blocks every fetch until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def fetch(self, day: date) -> HealthRecord:
        self.started.set()
        self.release.wait(timeout=5)
        return super().fetch(day)


def _service(
    database: Database,
    *,
    source: StubSource | None = None,
    vault: StubVault | None = None,
    now: datetime = NOW,
    metrics: PrometheusMetrics | None = None,
    orchestrator: ExportOrchestrator | None = None,
) -> tuple[ExportService, RecordingNotifier]:
    notifier = RecordingNotifier()
    service = ExportService(
        orchestrator or ExportOrchestrator(source or StubSource(), StubWriter()),
        vault or StubVault(),
        HistoryStore(database),
        SchedulePlanner(database),
        notifier=notifier,  # type: ignore[arg-type]
        metrics=metrics,
        now_fn=lambda: now,
    )
    return service, notifier


def test_manual_export_records_history_without_moving_watermark(database: Database) -> None:
    service, notifier = _service(database)
    progress: list[tuple[int, int, str]] = []

    result = service.run_manual_export(
        date(2026, 3, 1), date(2026, 3, 3), on_progress=lambda *args: progress.append(args)
    )

    assert result.is_full_success
    assert result.total_count == 3
    assert progress[-1] == (3, 3, "2026-03-03")
    entry = service.history.entries[0]
    assert entry.source is ExportSource.MANUAL
    assert (entry.date_range_start, entry.date_range_end) == (date(2026, 3, 1), date(2026, 3, 3))
    assert service.planner.schedule.last_export_date is None
    assert notifier.sent == []


def test_manual_export_updates_metrics(database: Database) -> None:
    metrics = PrometheusMetrics(registry=CollectorRegistry())
    service, _ = _service(database, metrics=metrics)

    service.run_manual_export(date(2026, 3, 1), date(2026, 3, 2))

    registry = metrics.registry
    assert (
        registry.get_sample_value(
            "healthmd_export_runs_total", {"source": "Manual", "outcome": "success"}
        )
        == 1.0
    )
    assert (
        registry.get_sample_value("healthmd_export_days_exported_total", {"source": "Manual"})
        == 2.0
    )


def test_scheduled_export_advances_watermark_and_notifies(database: Database) -> None:
    service, notifier = _service(database)

    result = service.run_scheduled_export()

    assert result.success_count == 1
    assert service.planner.schedule.last_export_date == NOW
    assert service.history.entries[0].source is ExportSource.SCHEDULED
    assert service.history.entries[0].date_range_end == YESTERDAY
    assert notifier.sent == [
        Notification(
            title="Export Completed", body="Successfully exported yesterday's health data"
        )
    ]


def test_failed_scheduled_export_keeps_watermark(database: Database) -> None:
    service, notifier = _service(database, vault=StubVault(access=False))

    result = service.run_scheduled_export()

    assert result.is_total_failure
    assert service.planner.schedule.last_export_date is None
    assert service.history.entries[0].failure_reason is FailureReason.NO_VAULT_SELECTED
    assert notifier.sent[0].title == "Export Failed"
    assert notifier.sent[0].body == "No vault selected"


def test_scheduled_export_expires_when_budget_is_spent(database: Database) -> None:
    service, _ = _service(database)

    result = service.run_scheduled_export(deadline=time.monotonic() - 1)

    assert result.was_cancelled
    assert result.primary_failure_reason is FailureReason.TASK_EXPIRED
    assert service.planner.schedule.last_export_date is None


def test_catch_up_is_refused_when_scheduling_is_disabled(database: Database) -> None:
    service, notifier = _service(database)

    outcome = service.run_catch_up_export()

    assert outcome.status == Failure(reason="Scheduling is disabled")
    assert notifier.sent == []


def test_catch_up_reports_nothing_to_do(database: Database) -> None:
    source = StubSource()
    service, notifier = _service(database, source=source)
    service.planner.update(is_enabled=True)
    service.planner.mark_exported(datetime(2026, 3, 12, 2, 30))

    outcome = service.run_catch_up_export()

    assert outcome.status == NoExportNeeded()
    assert outcome.is_success
    assert source.calls == []
    assert len(service.history) == 0
    assert notifier.sent == []


def test_catch_up_on_locked_device_asks_for_retry(database: Database) -> None:
    source = StubSource(failures={YESTERDAY: DeviceLockedError("protected data unavailable")})
    service, notifier = _service(database, source=source)
    service.planner.update(is_enabled=True)

    outcome = service.run_catch_up_export()

    assert outcome.status == Failure(reason="Device locked", retry_reminder=True)
    assert outcome.needs_retry_reminder
    assert outcome.title == "Device Was Locked"
    assert service.planner.schedule.last_export_date is None
    assert service.history.entries[0].failure_reason is FailureReason.DEVICE_LOCKED
    assert notifier.sent[0].is_reminder


def test_partial_catch_up_moves_watermark(database: Database) -> None:
    source = StubSource(empty_days={date(2026, 3, 10)})
    service, notifier = _service(database, source=source)
    service.planner.update(is_enabled=True, frequency=ExportFrequency.WEEKLY)
    service.planner.mark_exported(datetime(2026, 3, 10, 2, 30))

    outcome = service.run_catch_up_export()

    assert source.calls == [date(2026, 3, 10), YESTERDAY]
    assert outcome.status == PartialSuccess(exported=1, total=2)
    assert service.planner.schedule.last_export_date == NOW
    assert notifier.sent[0].body == "Exported 1 of 2 days"


def test_catch_up_with_mixed_failures_does_not_ask_for_retry(database: Database) -> None:
    source = StubSource(failures={date(2026, 3, 10): DeviceLockedError("locked")})
    orchestrator = ExportOrchestrator(source, StubWriter(failing_days={YESTERDAY}))
    service, notifier = _service(database, orchestrator=orchestrator)
    service.planner.update(is_enabled=True, frequency=ExportFrequency.WEEKLY)
    service.planner.mark_exported(datetime(2026, 3, 10, 2, 30))

    outcome = service.run_catch_up_export()

    assert outcome.status == Failure(reason="Device locked", retry_reminder=False)
    assert outcome.title == "Export Failed"
    assert not notifier.sent[0].is_reminder


def test_stopped_catch_up_leaves_unattempted_days_for_next_time(
    database: Database, caplog: pytest.LogCaptureFixture
) -> None:
    class StoppedAfterFirstDay(ExportOrchestrator):
        def export_dates(self, dates, vault, **kwargs):  # type: ignore[no-untyped-def]
            return ExportResult(success_count=1, total_count=1, was_cancelled=True)

    service, _ = _service(
        database, orchestrator=StoppedAfterFirstDay(StubSource(), StubWriter())
    )
    service.planner.update(is_enabled=True, frequency=ExportFrequency.WEEKLY)
    service.planner.mark_exported(datetime(2026, 3, 9, 2, 30))

    with caplog.at_level(logging.WARNING, logger="healthmd.service"):
        outcome = service.run_catch_up_export()

    assert outcome.status == PartialSuccess(exported=1, total=1)
    assert service.planner.schedule.last_export_date == datetime(2026, 3, 10, 0, 0)
    assert service.planner.catch_up_dates(NOW) == [date(2026, 3, 10), YESTERDAY]
    assert "2026-03-10" in caplog.text


def test_run_if_due_waits_for_preferred_time(database: Database) -> None:
    early, _ = _service(database, now=datetime(2026, 3, 12, 7, 0))
    early.planner.update(is_enabled=True, preferred_hour=8)

    assert early.run_if_due() is None

    late, _ = _service(database, now=datetime(2026, 3, 12, 8, 5))
    outcome = late.run_if_due()

    assert outcome is not None
    assert outcome.status == Success(days_exported=1)


def test_unattended_runs_skip_while_manual_export_runs(database: Database) -> None:
    source = BlockingSource()
    service, _ = _service(database, source=source)
    service.planner.update(is_enabled=True)
    worker = threading.Thread(
        target=service.run_manual_export, args=(date(2026, 3, 1), date(2026, 3, 1))
    )
    worker.start()
    assert source.started.wait(timeout=5)

    try:
        assert service.is_running
        assert service.run_scheduled_export().total_count == 0
        busy = service.run_catch_up_export()
        assert busy.status == Failure(reason="An export is already in progress")
    finally:
        source.release.set()
        worker.join(timeout=5)

    assert not service.is_running
    assert [entry.source for entry in service.history.entries] == [ExportSource.MANUAL]


def test_manual_export_preempts_the_active_run(database: Database) -> None:
    source = BlockingSource()
    orchestrator = RecordingOrchestrator(source, StubWriter())
    service, _ = _service(database, orchestrator=orchestrator)
    results = {}

    def run(name: str, start: date, end: date) -> None:
        results[name] = service.run_manual_export(start, end)

    first = threading.Thread(target=run, args=("first", date(2026, 3, 1), date(2026, 3, 3)))
    first.start()
    assert source.started.wait(timeout=5)
    second = threading.Thread(target=run, args=("second", date(2026, 3, 5), date(2026, 3, 5)))
    second.start()

    deadline = time.monotonic() + 5
    while not orchestrator.cancel_events[0].is_set() and time.monotonic() < deadline:
        time.sleep(0.01)
    source.release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert results["first"].was_cancelled
    assert (results["first"].success_count, results["first"].total_count) == (1, 1)
    assert results["second"].is_full_success
    assert source.calls == [date(2026, 3, 1), date(2026, 3, 5)]
    assert len(service.history) == 2
