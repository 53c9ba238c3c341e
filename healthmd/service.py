"""Entry points for manual, scheduled and catch-up exports."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import date, datetime, time as dtime, timedelta

from .dates import DayLike, local_midnight, resolve_dates
from .history import HistoryStore
from .metrics import PrometheusMetrics
from .models import (
    ExportResult,
    ExportSource,
    Failure,
    NoExportNeeded,
    NotificationExportResult,
    PartialSuccess,
    Success,
)
from .notifications import (
    Notification,
    Notifier,
    notification_for_catch_up,
    notification_for_run,
)
from .orchestrator import ExportOrchestrator, ProgressCallback
from .schedule import SchedulePlanner
from .vault import VaultAccess

logger = logging.getLogger(__name__)


def _watermark_after(result: ExportResult, dates: Sequence[date], now: datetime) -> datetime:
    """Return the run-time watermark to store once ``result`` exported something.

    A run stopped before reaching every date only covers the days it attempted,
    so the watermark stops just after the last of them and the rest stay
    eligible for catch-up.
    """

    if result.total_count >= len(dates):
        return now
    skipped = dates[result.total_count :]
    logger.warning(
        "Export stopped before %s; %d day(s) left for catch-up",
        skipped[0].isoformat(),
        len(skipped),
    )
    covered_until = dates[result.total_count - 1] + timedelta(days=1)
    if now.tzinfo is not None:
        return local_midnight(covered_until)
    return datetime.combine(covered_until, dtime.min)


class ExportService:
    """Serialize export runs and turn their results into history and notifications.

    At most one run is active. A manual export cancels the active run and
    waits for it to finish; unattended runs are skipped while another run is
    in progress.
    """

    def __init__(
        self,
        orchestrator: ExportOrchestrator,
        vault: VaultAccess,
        history: HistoryStore,
        planner: SchedulePlanner,
        *,
        notifier: Notifier | None = None,
        metrics: PrometheusMetrics | None = None,
        background_budget_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
        now_fn: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.orchestrator = orchestrator
        self.vault = vault
        self.history = history
        self.planner = planner
        self.notifier = notifier
        self.metrics = metrics
        self.background_budget_seconds = background_budget_seconds
        self._clock = clock
        self._now = now_fn
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active_cancel: threading.Event | None = None

    def now(self) -> datetime:
        return self._now()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def cancel_active(self) -> bool:
        """Request cancellation of the active run; returns ``False`` when idle."""

        with self._state_lock:
            if self._active_cancel is None:
                return False
            self._active_cancel.set()
            return True

    @contextmanager
    def _exclusive_run(self, *, preempt: bool) -> Iterator[threading.Event | None]:
        if preempt:
            if self.cancel_active():
                logger.info("Cancelling the active export to start a manual export")
            self._run_lock.acquire()
        elif not self._run_lock.acquire(blocking=False):
            logger.info("An export is already in progress; skipping")
            yield None
            return

        cancel_event = threading.Event()
        with self._state_lock:
            self._active_cancel = cancel_event
        try:
            yield cancel_event
        finally:
            with self._state_lock:
                self._active_cancel = None
            self._run_lock.release()

    def run_manual_export(
        self,
        start: DayLike,
        end: DayLike,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> ExportResult:
        dates = resolve_dates(start, end)
        logger.info("Manual export of %d day(s) from %s to %s", len(dates), dates[0], dates[-1])
        with self._exclusive_run(preempt=True) as cancel_event:
            result = self.orchestrator.export_dates(
                dates,
                self.vault,
                on_progress=on_progress,
                cancel_event=cancel_event,
            )
        self._record(result, ExportSource.MANUAL, dates)
        return result

    def run_scheduled_export(self, *, deadline: float | None = None) -> ExportResult:
        """Export the days covered by the current schedule as an unattended run."""

        now = self._now()
        dates = self.planner.scheduled_dates(now)
        if deadline is None:
            deadline = self._clock() + self.background_budget_seconds
        logger.info("Scheduled export of %d day(s) ending %s", len(dates), dates[-1])

        with self._exclusive_run(preempt=False) as cancel_event:
            if cancel_event is None:
                return ExportResult.empty()
            result = self.orchestrator.export_dates(
                dates,
                self.vault,
                cancel_event=cancel_event,
                deadline=deadline,
            )

        if result.success_count > 0:
            self.planner.mark_exported(_watermark_after(result, dates, now))
        self._record(result, ExportSource.SCHEDULED, dates)
        self._notify(notification_for_run(result))
        logger.info(
            "Scheduled export finished: %d/%d day(s) exported",
            result.success_count,
            result.total_count,
        )
        return result

    def run_catch_up_export(self) -> NotificationExportResult:
        """Backfill data-days missed since the last successful scheduled run."""

        schedule = self.planner.schedule
        if not schedule.is_enabled:
            logger.info("Schedule disabled, skipping catch-up export")
            return NotificationExportResult(Failure(reason="Scheduling is disabled"))

        now = self._now()
        dates = self.planner.catch_up_dates(now)
        if not dates:
            logger.info("Catch-up check: no missed exports")
            return NotificationExportResult(NoExportNeeded())

        logger.info("Catch-up: found %d missed day(s) to export", len(dates))
        with self._exclusive_run(preempt=False) as cancel_event:
            if cancel_event is None:
                return NotificationExportResult(Failure(reason="An export is already in progress"))
            result = self.orchestrator.export_dates(
                dates,
                self.vault,
                cancel_event=cancel_event,
                deadline=self._clock() + self.background_budget_seconds,
            )

        self._record(result, ExportSource.SCHEDULED, dates)
        if result.success_count > 0:
            self.planner.mark_exported(_watermark_after(result, dates, now))
            logger.info(
                "Catch-up export completed: %d/%d day(s)",
                result.success_count,
                result.total_count,
            )
            if result.is_full_success:
                outcome = NotificationExportResult(Success(days_exported=result.success_count))
            else:
                outcome = NotificationExportResult(
                    PartialSuccess(exported=result.success_count, total=result.total_count)
                )
        else:
            reason = result.primary_failure_reason
            outcome = NotificationExportResult(
                Failure(
                    reason=reason.short_description if reason else "Unknown error",
                    retry_reminder=result.all_failed_device_locked,
                )
            )
            logger.warning("Catch-up export failed: %s", outcome.message)

        self._notify(notification_for_catch_up(outcome))
        return outcome

    def run_if_due(self) -> NotificationExportResult | None:
        """Run a catch-up export when the preferred time has passed and data is missing."""

        if not self.planner.is_due(self._now()):
            return None
        logger.info("Export is due, performing catch-up export")
        return self.run_catch_up_export()

    def _record(self, result: ExportResult, source: ExportSource, dates: Sequence[date]) -> None:
        if self.metrics is not None:
            self.metrics.record_export(source, result)
        if result.total_count == 0:
            return
        self.history.record_result(
            result,
            source=source,
            date_range_start=dates[0],
            date_range_end=dates[-1],
        )

    def _notify(self, notification: Notification | None) -> None:
        if notification is None or self.notifier is None:
            return
        self.notifier.send(notification)
