"""Recurring schedule state and catch-up planning.

Two watermarks are involved. ``ExportSchedule.last_export_date`` is the
wall-clock time a run last exported at least one day, while the data a run
exports always belongs to the day *before* it ran. Catch-up therefore
translates the run-time watermark into a data-day watermark before deciding
which days are missing.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import date, datetime, timedelta

from .dates import resolve_dates, to_calendar_day
from .db import Database
from .models import ExportFrequency, ExportSchedule

logger = logging.getLogger(__name__)

SCHEDULE_KEY = "exportSchedule"
WEEKLY_LOOKBACK_DAYS = 7


def _step(frequency: ExportFrequency) -> timedelta:
    return timedelta(days=7 if frequency is ExportFrequency.WEEKLY else 1)


def yesterday_of(now: datetime) -> date:
    return to_calendar_day(now) - timedelta(days=1)


def compute_next_run_time(schedule: ExportSchedule, now: datetime) -> datetime:
    """Return the next instant at the preferred time strictly after ``now``."""

    aware = now.tzinfo is not None
    wall = (now.astimezone() if aware else now).replace(tzinfo=None)
    candidate = wall.replace(
        hour=schedule.preferred_hour,
        minute=schedule.preferred_minute,
        second=0,
        microsecond=0,
    )
    if candidate <= wall:
        candidate += _step(schedule.frequency)
    # Wall-clock arithmetic keeps the preferred time stable across DST changes.
    return candidate.astimezone() if aware else candidate


def plan_catch_up(schedule: ExportSchedule, now: datetime) -> list[date]:
    """Return the data-days missed since the last successful run, oldest first."""

    yesterday = yesterday_of(now)
    if schedule.frequency is ExportFrequency.WEEKLY:
        oldest_allowed = yesterday - timedelta(days=WEEKLY_LOOKBACK_DAYS)
    else:
        oldest_allowed = yesterday

    if schedule.last_export_date is not None:
        last_exported_data_day = to_calendar_day(schedule.last_export_date) - timedelta(days=1)
    else:
        last_exported_data_day = oldest_allowed - timedelta(days=1)

    if last_exported_data_day >= yesterday:
        return []
    first_missing = max(last_exported_data_day + timedelta(days=1), oldest_allowed)
    return resolve_dates(first_missing, yesterday)


def scheduled_dates(schedule: ExportSchedule, now: datetime) -> list[date]:
    """Days covered by a regular scheduled run: yesterday, or the last seven days."""

    yesterday = yesterday_of(now)
    if schedule.frequency is ExportFrequency.WEEKLY:
        return resolve_dates(yesterday - timedelta(days=WEEKLY_LOOKBACK_DAYS - 1), yesterday)
    return [yesterday]


def is_export_due(schedule: ExportSchedule, now: datetime) -> bool:
    """True once today's preferred time has passed and some data-day is uncovered."""

    if not schedule.is_enabled:
        return False
    local = now.astimezone() if now.tzinfo is not None else now
    minute_of_day = local.hour * 60 + local.minute
    preferred = schedule.preferred_hour * 60 + schedule.preferred_minute
    if minute_of_day < preferred:
        return False
    return bool(plan_catch_up(schedule, now))


class SchedulePlanner:
    """Own the persisted :class:`ExportSchedule` and derive run times from it."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self._lock = threading.Lock()
        self._schedule = self._load()

    @property
    def schedule(self) -> ExportSchedule:
        return dataclasses.replace(self._schedule)

    def update(
        self,
        *,
        is_enabled: bool | None = None,
        frequency: ExportFrequency | None = None,
        preferred_hour: int | None = None,
        preferred_minute: int | None = None,
    ) -> ExportSchedule:
        """Apply user edits; the run-time watermark is left untouched."""

        changes: dict[str, object] = {
            key: value
            for key, value in {
                "is_enabled": is_enabled,
                "frequency": frequency,
                "preferred_hour": preferred_hour,
                "preferred_minute": preferred_minute,
            }.items()
            if value is not None
        }
        with self._lock:
            self._schedule = dataclasses.replace(self._schedule, **changes)
            self._save()
        logger.info("Schedule updated: %s", self._schedule.to_dict())
        return self.schedule

    def mark_exported(self, now: datetime) -> None:
        """Advance the run-time watermark after a run exported at least one day."""

        with self._lock:
            self._schedule = dataclasses.replace(self._schedule, last_export_date=now)
            self._save()
        logger.debug("Last export watermark advanced to %s", now.isoformat())

    def next_run_time(self, now: datetime) -> datetime | None:
        schedule = self._schedule
        if not schedule.is_enabled:
            return None
        return compute_next_run_time(schedule, now)

    def next_export_description(self, now: datetime) -> str | None:
        next_run = self.next_run_time(now)
        if next_run is None:
            return None
        return next_run.strftime("%b %d, %Y at %H:%M")

    def catch_up_dates(self, now: datetime) -> list[date]:
        return plan_catch_up(self._schedule, now)

    def scheduled_dates(self, now: datetime) -> list[date]:
        return scheduled_dates(self._schedule, now)

    def is_due(self, now: datetime) -> bool:
        return is_export_due(self._schedule, now)

    def _load(self) -> ExportSchedule:
        payload = self.database.get_json(SCHEDULE_KEY)
        if not payload:
            return ExportSchedule()
        try:
            return ExportSchedule.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable schedule under %s", SCHEDULE_KEY)
            return ExportSchedule()

    def _save(self) -> None:
        self.database.set_json(SCHEDULE_KEY, self._schedule.to_dict())
