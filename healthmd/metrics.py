"""Prometheus metrics for healthmd."""

from __future__ import annotations

import threading
import time
from typing import Any, Protocol

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from .models import ExportResult, ExportSource
from .scheduler import ScheduledJob


class SchedulerMetricsRecorder(Protocol):
    """Receives job lifecycle events from :class:`~healthmd.scheduler.Scheduler`."""

    def register_job(self, job: ScheduledJob) -> None: ...

    def record_job_start(self, job: ScheduledJob) -> None: ...

    def record_job_success(self, job: ScheduledJob, duration: float) -> None: ...

    def record_job_failure(
        self, job: ScheduledJob, duration: float, error: BaseException | None = None
    ) -> None: ...


class PrometheusMetrics(SchedulerMetricsRecorder):
    """Expose scheduler and export-run metrics via a Prometheus scrape endpoint."""

    def __init__(
        self,
        *,
        host: str = "0.0.0.0",
        port: int = 9465,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._started = False
        self._lock = threading.Lock()
        self._registry = registry or CollectorRegistry()

        self._job_runs = Counter(
            "healthmd_scheduler_runs_total",
            "Number of scheduler job executions by status.",
            labelnames=("job", "status"),
            registry=self._registry,
        )
        self._job_last_duration = Gauge(
            "healthmd_scheduler_last_duration_seconds",
            "Duration of the most recent job execution in seconds.",
            labelnames=("job",),
            registry=self._registry,
        )
        self._job_last_status = Gauge(
            "healthmd_scheduler_last_status",
            "Status of the last run (1=success, 0=running, -1=failure).",
            labelnames=("job",),
            registry=self._registry,
        )
        self._export_runs = Counter(
            "healthmd_export_runs_total",
            "Completed export runs by trigger and outcome.",
            labelnames=("source", "outcome"),
            registry=self._registry,
        )
        self._days_exported = Counter(
            "healthmd_export_days_exported_total",
            "Days written to the vault.",
            labelnames=("source",),
            registry=self._registry,
        )
        self._days_failed = Counter(
            "healthmd_export_days_failed_total",
            "Days that failed to export, by failure reason.",
            labelnames=("source", "reason"),
            registry=self._registry,
        )
        self._last_success = Gauge(
            "healthmd_export_last_success_timestamp",
            "Unix timestamp of the most recent run that exported at least one day.",
            labelnames=("source",),
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def start(self) -> None:
        """Start the HTTP server if it has not already been started."""

        with self._lock:
            if not self._started:
                start_http_server(self._port, addr=self._host, registry=self._registry)
                self._started = True

    def register_job(self, job: ScheduledJob) -> None:
        self._job_last_duration.labels(job=job.name).set(float("nan"))
        self._job_last_status.labels(job=job.name).set(0.0)

    def record_job_start(self, job: ScheduledJob) -> None:
        self._job_runs.labels(job=job.name, status="started").inc()
        self._job_last_status.labels(job=job.name).set(0.0)

    def record_job_success(self, job: ScheduledJob, duration: float) -> None:
        self._job_runs.labels(job=job.name, status="succeeded").inc()
        self._job_last_duration.labels(job=job.name).set(duration)
        self._job_last_status.labels(job=job.name).set(1.0)

    def record_job_failure(
        self, job: ScheduledJob, duration: float, error: BaseException | None = None
    ) -> None:
        self._job_runs.labels(job=job.name, status="failed").inc()
        self._job_last_duration.labels(job=job.name).set(duration)
        self._job_last_status.labels(job=job.name).set(-1.0)

    def record_export(self, source: ExportSource, result: ExportResult) -> None:
        if result.was_cancelled:
            outcome = "cancelled"
        elif result.is_full_success:
            outcome = "success"
        elif result.is_partial_success:
            outcome = "partial"
        elif result.total_count == 0:
            outcome = "empty"
        else:
            outcome = "failure"
        self._export_runs.labels(source=source.value, outcome=outcome).inc()
        self._days_exported.labels(source=source.value).inc(result.success_count)
        for detail in result.failed_dates:
            self._days_failed.labels(source=source.value, reason=detail.reason.value).inc()
        if result.success_count > 0:
            self._last_success.labels(source=source.value).set(time.time())

    def metrics_details(self) -> dict[str, Any]:
        """Return endpoint details for inspection or testing."""

        return {
            "host": self._host,
            "port": self._port,
            "started": self._started,
        }
