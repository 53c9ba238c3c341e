"""Persistent, size-bounded log of past export runs."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from datetime import date

from .db import Database
from .models import (
    ExportResult,
    ExportSource,
    FailedDateDetail,
    FailureReason,
    HistoryEntry,
)

logger = logging.getLogger(__name__)

HISTORY_KEY = "exportHistory"
MAX_HISTORY_ENTRIES = 50


class HistoryStore:
    """Append-only export history, newest first, evicting the oldest entries."""

    def __init__(self, database: Database, *, max_entries: int = MAX_HISTORY_ENTRIES) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.database = database
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: tuple[HistoryEntry, ...] = self._load()

    @property
    def entries(self) -> tuple[HistoryEntry, ...]:
        """Snapshot of the history; safe to iterate while new runs are recorded."""

        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def record_success(
        self,
        *,
        source: ExportSource,
        date_range_start: date,
        date_range_end: date,
        success_count: int,
        total_count: int,
        failed_dates: Sequence[FailedDateDetail] = (),
    ) -> HistoryEntry:
        entry = HistoryEntry(
            source=source,
            success=True,
            date_range_start=date_range_start,
            date_range_end=date_range_end,
            success_count=success_count,
            total_count=total_count,
            failed_dates=tuple(failed_dates),
        )
        self._add(entry)
        return entry

    def record_failure(
        self,
        *,
        source: ExportSource,
        date_range_start: date,
        date_range_end: date,
        reason: FailureReason,
        total_count: int = 0,
        failed_dates: Sequence[FailedDateDetail] = (),
    ) -> HistoryEntry:
        entry = HistoryEntry(
            source=source,
            success=False,
            date_range_start=date_range_start,
            date_range_end=date_range_end,
            success_count=0,
            total_count=total_count,
            failure_reason=reason,
            failed_dates=tuple(failed_dates),
        )
        self._add(entry)
        return entry

    def record_result(
        self,
        result: ExportResult,
        *,
        source: ExportSource,
        date_range_start: date,
        date_range_end: date,
    ) -> HistoryEntry:
        """Record ``result`` as a success when any date exported, else as a failure."""

        if result.success_count > 0:
            return self.record_success(
                source=source,
                date_range_start=date_range_start,
                date_range_end=date_range_end,
                success_count=result.success_count,
                total_count=result.total_count,
                failed_dates=result.failed_dates,
            )
        return self.record_failure(
            source=source,
            date_range_start=date_range_start,
            date_range_end=date_range_end,
            reason=result.primary_failure_reason or FailureReason.UNKNOWN,
            total_count=result.total_count,
            failed_dates=result.failed_dates,
        )

    def clear(self) -> None:
        with self._lock:
            self._entries = ()
            self._save()
        logger.info("Cleared export history")

    def _add(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._entries = (entry, *self._entries)[: self.max_entries]
            self._save()
        logger.debug("Recorded %s history entry %s: %s", entry.source.value, entry.id, entry.summary)

    def _load(self) -> tuple[HistoryEntry, ...]:
        payload = self.database.get_json(HISTORY_KEY)
        if not payload:
            return ()
        try:
            entries = tuple(HistoryEntry.from_dict(item) for item in payload)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable export history under %s", HISTORY_KEY)
            return ()
        return entries[: self.max_entries]

    def _save(self) -> None:
        self.database.set_json(HISTORY_KEY, [entry.to_dict() for entry in self._entries])
