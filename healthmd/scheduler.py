"""Interval runner driving the export daemon's periodic checks."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .metrics import SchedulerMetricsRecorder

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScheduledJob:
    """An action repeated every ``interval``."""

    name: str
    interval: timedelta
    action: Callable[[], object]
    run_immediately: bool = True


@dataclass(slots=True)
class JobStats:
    runs: int = 0
    runs_failed: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runs": self.runs,
            "runs_failed": self.runs_failed,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


@dataclass(slots=True)
class _JobState:
    job: ScheduledJob
    due_at: float
    stats: JobStats = field(default_factory=JobStats)


class Scheduler:
    """Run registered jobs on fixed intervals until stopped.

    Jobs run one after another on the calling thread; a job that raises is
    logged and counted, and the loop carries on with the next job.
    """

    def __init__(
        self,
        metrics_recorder: "SchedulerMetricsRecorder | None" = None,
        *,
        time_fn: Callable[[], float] = time.monotonic,
        tick_seconds: float = 1.0,
    ) -> None:
        self._states: dict[str, _JobState] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._recorder = metrics_recorder
        self._time_fn = time_fn
        self._tick_seconds = tick_seconds

    def add_job(self, job: ScheduledJob) -> None:
        now = self._time_fn()
        due_at = now if job.run_immediately else now + job.interval.total_seconds()
        with self._lock:
            self._states[job.name] = _JobState(job=job, due_at=due_at)
        logger.info("Scheduled job %s to run every %s", job.name, job.interval)
        if self._recorder is not None:
            self._recorder.register_job(job)

    def run_pending(self) -> int:
        """Execute every job whose time has come and return how many ran."""

        now = self._time_fn()
        with self._lock:
            due = [state for state in self._states.values() if state.due_at <= now]
        for count, state in enumerate(due):
            if self._stop_event.is_set():
                return count
            self._execute(state)
            state.due_at = now + state.job.interval.total_seconds()
        return len(due)

    def _execute(self, state: _JobState) -> None:
        job = state.job
        state.stats.runs += 1
        state.stats.last_run_at = datetime.now(UTC)
        if self._recorder is not None:
            self._recorder.record_job_start(job)
        started = self._time_fn()
        try:
            job.action()
        except Exception as exc:
            logger.exception("Job %s failed", job.name)
            state.stats.runs_failed += 1
            state.stats.last_error = str(exc)[:200] or type(exc).__name__
            if self._recorder is not None:
                self._recorder.record_job_failure(job, self._time_fn() - started, exc)
            return
        state.stats.last_error = None
        if self._recorder is not None:
            self._recorder.record_job_success(job, self._time_fn() - started)

    def run(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            self._stop_event.wait(self._tick_seconds)

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def metrics_snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {name: state.stats.to_dict() for name, state in self._states.items()}
