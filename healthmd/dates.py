"""Calendar-day helpers shared by manual and catch-up exports."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

DayLike = date | datetime


def to_calendar_day(value: DayLike) -> date:
    """Return the local calendar day for ``value``.

    Aware datetimes are converted to the local timezone first; naive
    datetimes are assumed to already be local.
    """

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone()
        return value.date()
    return value


def local_midnight(day: DayLike) -> datetime:
    """Return the local-midnight instant for the calendar day of ``day``."""

    return datetime.combine(to_calendar_day(day), time.min).astimezone()


def format_day(day: DayLike) -> str:
    return to_calendar_day(day).isoformat()


def resolve_dates(start: DayLike, end: DayLike) -> list[date]:
    """Return every calendar day from ``start`` through ``end`` inclusive.

    Both bounds are normalized to calendar days. A reversed range is
    swapped so callers always receive an ascending list.
    """

    first = to_calendar_day(start)
    last = to_calendar_day(end)
    if first > last:
        first, last = last, first

    days: list[date] = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days
