"""Per-day export orchestration shared by manual, scheduled and catch-up runs."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from contextlib import contextmanager
from datetime import date
from typing import Any, TypeVar

from .client import AcquisitionError, DeviceLockedError, RecordSource
from .models import DataTypeSelection, ExportResult, FailedDateDetail, FailureReason
from .vault import RecordWriter, VaultAccess, VaultAccessError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]

T = TypeVar("T")


class _CallTimedOut(Exception):
    pass


class _DeadlineExpired(Exception):
    pass


def _call_with_timeout(fn: Callable[..., T], *args: Any, timeout: float | None) -> T:
    """Call ``fn`` and wait at most ``timeout`` seconds for it to return.

    Timed calls run on a daemon thread. A call that overruns is abandoned and
    cannot keep the process alive at exit.
    """

    if timeout is None:
        return fn(*args)
    future: Future[T] = Future()

    def run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args))
        except BaseException as exc:
            future.set_exception(exc)

    threading.Thread(target=run, name="healthmd-export-call", daemon=True).start()
    try:
        return future.result(timeout=max(timeout, 0.0))
    except FuturesTimeoutError:
        if future.done():
            return future.result()
        raise _CallTimedOut from None


@contextmanager
def vault_session(vault: VaultAccess) -> Iterator[VaultAccess]:
    """Refresh and start ``vault``, then stop it exactly once on every exit path."""

    vault.refresh()
    vault.start()
    try:
        yield vault
    finally:
        vault.stop()


def _fail_all(
    days: Sequence[date], reason: FailureReason, raw_error_text: str | None = None
) -> tuple[FailedDateDetail, ...]:
    return tuple(FailedDateDetail(day, reason, raw_error_text) for day in days)


class ExportOrchestrator:
    """Fetch and write each requested day, isolating per-day failures."""

    def __init__(
        self,
        source: RecordSource,
        writer: RecordWriter,
        *,
        fetch_timeout: float | None = None,
        data_types: DataTypeSelection | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if fetch_timeout is not None and fetch_timeout <= 0:
            raise ValueError("fetch_timeout must be positive")
        self.source = source
        self.writer = writer
        self.fetch_timeout = fetch_timeout
        self.data_types = data_types
        self._clock = clock

    def export_dates(
        self,
        dates: Iterable[date],
        vault: VaultAccess,
        *,
        on_progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> ExportResult:
        """Export ``dates`` in order and return one outcome per attempted day.

        ``deadline`` is an absolute value of the orchestrator's clock
        (``time.monotonic`` by default). Once it passes, the in-flight day and
        every remaining day are recorded as expired.
        """

        days = list(dates)
        if not days:
            return ExportResult.empty()

        if not vault.has_access():
            logger.warning("No vault folder available; skipping %d day(s)", len(days))
            return ExportResult(
                success_count=0,
                total_count=len(days),
                failed_dates=_fail_all(days, FailureReason.NO_VAULT_SELECTED),
            )

        try:
            with vault_session(vault):
                return self._export_all(days, on_progress, cancel_event, deadline)
        except VaultAccessError as exc:
            logger.warning("Vault access denied: %s", exc)
            return ExportResult(
                success_count=0,
                total_count=len(days),
                failed_dates=_fail_all(days, FailureReason.ACCESS_DENIED, str(exc)),
            )

    def _export_all(
        self,
        days: Sequence[date],
        on_progress: ProgressCallback | None,
        cancel_event: threading.Event | None,
        deadline: float | None,
    ) -> ExportResult:
        success_count = 0
        failed: list[FailedDateDetail] = []
        total = len(days)
        for index, day in enumerate(days):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Export cancelled after %d of %d day(s)", index, total)
                return ExportResult(
                    success_count=success_count,
                    total_count=index,
                    failed_dates=tuple(failed),
                    was_cancelled=True,
                )
            try:
                if self._expired(deadline):
                    raise _DeadlineExpired
                outcome = self._export_day(day, deadline)
            except _DeadlineExpired:
                logger.warning(
                    "Export deadline passed at %s; %d day(s) not exported",
                    day,
                    total - index,
                )
                failed.extend(_fail_all(days[index:], FailureReason.TASK_EXPIRED))
                return ExportResult(
                    success_count=success_count,
                    total_count=total,
                    failed_dates=tuple(failed),
                    was_cancelled=True,
                )

            if outcome is None:
                success_count += 1
            else:
                logger.info("Export of %s failed: %s", day, outcome.reason.short_description)
                failed.append(outcome)
            if on_progress is not None:
                on_progress(index + 1, total, day.isoformat())

        return ExportResult(
            success_count=success_count,
            total_count=total,
            failed_dates=tuple(failed),
        )

    def _export_day(self, day: date, deadline: float | None) -> FailedDateDetail | None:
        remaining = self._remaining(deadline)
        limited_by_deadline = remaining is not None and (
            self.fetch_timeout is None or remaining <= self.fetch_timeout
        )
        budget = remaining if limited_by_deadline else self.fetch_timeout
        try:
            record = _call_with_timeout(self.source.fetch, day, timeout=budget)
        except _CallTimedOut:
            if limited_by_deadline:
                raise _DeadlineExpired from None
            return FailedDateDetail(
                day,
                FailureReason.ACQUISITION_ERROR,
                f"Timed out after {self.fetch_timeout:g}s",
            )
        except DeviceLockedError as exc:
            return FailedDateDetail(day, FailureReason.DEVICE_LOCKED, str(exc) or None)
        except AcquisitionError as exc:
            return FailedDateDetail(day, FailureReason.ACQUISITION_ERROR, str(exc) or None)
        except Exception as exc:
            logger.exception("Unexpected error fetching %s", day)
            return FailedDateDetail(day, FailureReason.UNKNOWN, str(exc) or None)

        if self.data_types is not None:
            record = record.select(self.data_types)
        if not record.has_any_data:
            return FailedDateDetail(day, FailureReason.NO_HEALTH_DATA)

        try:
            written = _call_with_timeout(
                self.writer.write, record, day, timeout=self._remaining(deadline)
            )
        except _CallTimedOut:
            raise _DeadlineExpired from None
        except OSError as exc:
            return FailedDateDetail(day, FailureReason.WRITE_ERROR, str(exc) or None)
        except Exception as exc:
            logger.exception("Unexpected error writing %s", day)
            return FailedDateDetail(day, FailureReason.UNKNOWN, str(exc) or None)

        if not written:
            return FailedDateDetail(day, FailureReason.WRITE_ERROR)
        return None

    def _remaining(self, deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return deadline - self._clock()

    def _expired(self, deadline: float | None) -> bool:
        return deadline is not None and self._clock() >= deadline
