"""Data models used across healthmd components."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

HEALTH_CATEGORIES: tuple[str, ...] = (
    "sleep",
    "activity",
    "heart",
    "vitals",
    "body",
    "nutrition",
    "mindfulness",
    "mobility",
    "hearing",
)

DATA_TYPES: tuple[str, ...] = (*HEALTH_CATEGORIES, "workouts")


class FailureReason(str, Enum):
    """Why a single date (or a whole run) failed to export."""

    NO_VAULT_SELECTED = "no_vault"
    ACCESS_DENIED = "access_denied"
    NO_HEALTH_DATA = "no_health_data"
    ACQUISITION_ERROR = "acquisition_error"
    DEVICE_LOCKED = "device_locked"
    WRITE_ERROR = "file_write_error"
    TASK_EXPIRED = "task_expired"
    UNKNOWN = "unknown"

    @property
    def short_description(self) -> str:
        return _SHORT_DESCRIPTIONS[self]

    @property
    def detailed_description(self) -> str:
        return _DETAILED_DESCRIPTIONS[self]


_SHORT_DESCRIPTIONS = {
    FailureReason.NO_VAULT_SELECTED: "No vault selected",
    FailureReason.ACCESS_DENIED: "Vault access denied",
    FailureReason.NO_HEALTH_DATA: "No health data",
    FailureReason.ACQUISITION_ERROR: "Health data error",
    FailureReason.DEVICE_LOCKED: "Device locked",
    FailureReason.WRITE_ERROR: "File write failed",
    FailureReason.TASK_EXPIRED: "Task timed out",
    FailureReason.UNKNOWN: "Unknown error",
}

_DETAILED_DESCRIPTIONS = {
    FailureReason.NO_VAULT_SELECTED: (
        "No vault folder was selected. Please select a vault folder in the settings."
    ),
    FailureReason.ACCESS_DENIED: (
        "Could not access the vault folder. You may need to re-select the folder "
        "to grant permission."
    ),
    FailureReason.NO_HEALTH_DATA: "No health data was available for the selected date.",
    FailureReason.ACQUISITION_ERROR: (
        "Failed to fetch health data. Check that health permissions are granted."
    ),
    FailureReason.DEVICE_LOCKED: (
        "Health data is protected while your device is locked. The export will "
        "retry when your device is unlocked."
    ),
    FailureReason.WRITE_ERROR: "Failed to write the export file to the vault folder.",
    FailureReason.TASK_EXPIRED: (
        "The background export task ran out of time before completing."
    ),
    FailureReason.UNKNOWN: "An unexpected error occurred during export.",
}


class ExportSource(str, Enum):
    MANUAL = "Manual"
    SCHEDULED = "Scheduled"


class ExportFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class WriteMode(str, Enum):
    """How an export treats a file that already exists for the day."""

    OVERWRITE = "overwrite"
    APPEND = "append"


@dataclass(frozen=True, slots=True)
class DataTypeSelection:
    """The health categories (and workouts) included in exported files."""

    enabled: frozenset[str] = frozenset(DATA_TYPES)

    def __post_init__(self) -> None:
        unknown = sorted(self.enabled - set(DATA_TYPES))
        if unknown:
            raise ValueError(f"unknown data types: {', '.join(unknown)}")
        if not self.enabled:
            raise ValueError("at least one data type must be selected")

    @classmethod
    def of(cls, *names: str) -> DataTypeSelection:
        return cls(frozenset(names))

    def includes(self, name: str) -> bool:
        return name in self.enabled


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True, slots=True)
class FailedDateDetail:
    """Outcome of one date that did not export."""

    date: date
    reason: FailureReason
    raw_error_text: str | None = None

    @property
    def date_string(self) -> str:
        return self.date.isoformat()

    @property
    def detailed_message(self) -> str:
        if self.raw_error_text:
            return f"{self.reason.detailed_description}\n\nDetails: {self.raw_error_text}"
        return self.reason.detailed_description

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "reason": self.reason.value,
            "raw_error_text": self.raw_error_text,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> FailedDateDetail:
        return cls(
            date=date.fromisoformat(str(payload["date"])),
            reason=FailureReason(payload["reason"]),
            raw_error_text=payload.get("raw_error_text"),
        )


@dataclass(frozen=True, slots=True)
class ExportResult:
    """Aggregate outcome of one orchestration run."""

    success_count: int
    total_count: int
    failed_dates: tuple[FailedDateDetail, ...] = ()
    was_cancelled: bool = False

    def __post_init__(self) -> None:
        if self.success_count < 0 or self.total_count < 0:
            raise ValueError("counts must be non-negative")
        if self.success_count + len(self.failed_dates) != self.total_count:
            raise ValueError(
                "success_count + failed dates must equal total_count "
                f"({self.success_count} + {len(self.failed_dates)} != {self.total_count})"
            )

    @classmethod
    def empty(cls) -> ExportResult:
        return cls(success_count=0, total_count=0)

    @property
    def is_full_success(self) -> bool:
        return self.success_count == self.total_count and self.total_count > 0

    @property
    def is_partial_success(self) -> bool:
        return 0 < self.success_count < self.total_count

    @property
    def is_total_failure(self) -> bool:
        return self.success_count == 0 and self.total_count > 0

    @property
    def primary_failure_reason(self) -> FailureReason | None:
        return self.failed_dates[0].reason if self.failed_dates else None

    @property
    def all_failed_device_locked(self) -> bool:
        """True when there were failures and the device was locked for every one."""

        return bool(self.failed_dates) and all(
            detail.reason is FailureReason.DEVICE_LOCKED for detail in self.failed_dates
        )


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """Persisted record of one completed export run."""

    source: ExportSource
    success: bool
    date_range_start: date
    date_range_end: date
    success_count: int
    total_count: int
    failure_reason: FailureReason | None = None
    failed_dates: tuple[FailedDateDetail, ...] = ()
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_full_success(self) -> bool:
        return self.success and self.success_count == self.total_count and self.total_count > 0

    @property
    def is_partial_success(self) -> bool:
        return self.success and 0 < self.success_count < self.total_count

    @property
    def summary(self) -> str:
        if self.is_full_success:
            plural = "" if self.success_count == 1 else "s"
            return f"Exported {self.success_count} file{plural}"
        if self.is_partial_success:
            return f"Partial: {self.success_count}/{self.total_count} files"
        if self.failure_reason is not None:
            return self.failure_reason.short_description
        return "Export failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
            "success": self.success,
            "date_range_start": self.date_range_start.isoformat(),
            "date_range_end": self.date_range_end.isoformat(),
            "success_count": self.success_count,
            "total_count": self.total_count,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "failed_dates": [detail.to_dict() for detail in self.failed_dates],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> HistoryEntry:
        reason = payload.get("failure_reason")
        return cls(
            id=str(payload["id"]),
            timestamp=_parse_datetime(str(payload["timestamp"])),
            source=ExportSource(payload["source"]),
            success=bool(payload["success"]),
            date_range_start=date.fromisoformat(str(payload["date_range_start"])),
            date_range_end=date.fromisoformat(str(payload["date_range_end"])),
            success_count=int(payload["success_count"]),
            total_count=int(payload["total_count"]),
            failure_reason=FailureReason(reason) if reason else None,
            failed_dates=tuple(
                FailedDateDetail.from_dict(item) for item in payload.get("failed_dates", [])
            ),
        )


@dataclass(slots=True)
class ExportSchedule:
    """User-configured recurring export settings and the run-time watermark."""

    is_enabled: bool = False
    frequency: ExportFrequency = ExportFrequency.DAILY
    preferred_hour: int = 8
    preferred_minute: int = 0
    last_export_date: datetime | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.preferred_hour <= 23:
            raise ValueError("preferred_hour must be between 0 and 23")
        if not 0 <= self.preferred_minute <= 59:
            raise ValueError("preferred_minute must be between 0 and 59")

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_enabled": self.is_enabled,
            "frequency": self.frequency.value,
            "preferred_hour": self.preferred_hour,
            "preferred_minute": self.preferred_minute,
            "last_export_date": self.last_export_date.isoformat()
            if self.last_export_date
            else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ExportSchedule:
        last_export = payload.get("last_export_date")
        return cls(
            is_enabled=bool(payload.get("is_enabled", False)),
            frequency=ExportFrequency(payload.get("frequency", ExportFrequency.DAILY.value)),
            preferred_hour=int(payload.get("preferred_hour", 8)),
            preferred_minute=int(payload.get("preferred_minute", 0)),
            last_export_date=_parse_datetime(str(last_export)) if last_export else None,
        )


def _has_value(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) > 0
    return True


@dataclass(slots=True)
class HealthRecord:
    """Health metrics for one calendar day."""

    date: date
    categories: dict[str, dict[str, Any]] = field(default_factory=dict)
    workouts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def has_any_data(self) -> bool:
        if self.workouts:
            return True
        return any(
            _has_value(value)
            for metrics in self.categories.values()
            for value in metrics.values()
        )

    def select(self, data_types: DataTypeSelection) -> HealthRecord:
        return HealthRecord(
            date=self.date,
            categories={
                name: metrics
                for name, metrics in self.categories.items()
                if data_types.includes(name)
            },
            workouts=list(self.workouts) if data_types.includes("workouts") else [],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            **{name: dict(metrics) for name, metrics in self.categories.items()},
            "workouts": list(self.workouts),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], day: date | None = None) -> HealthRecord:
        record_day = day or date.fromisoformat(str(payload["date"]))
        categories = {
            name: dict(payload[name])
            for name in HEALTH_CATEGORIES
            if isinstance(payload.get(name), Mapping)
        }
        workouts = [dict(item) for item in payload.get("workouts") or [] if isinstance(item, Mapping)]
        return cls(date=record_day, categories=categories, workouts=workouts)


@dataclass(frozen=True, slots=True)
class Success:
    days_exported: int


@dataclass(frozen=True, slots=True)
class PartialSuccess:
    exported: int
    total: int


@dataclass(frozen=True, slots=True)
class Failure:
    reason: str
    retry_reminder: bool = False


@dataclass(frozen=True, slots=True)
class NoExportNeeded:
    pass


ExportStatus = Success | PartialSuccess | Failure | NoExportNeeded


@dataclass(frozen=True, slots=True)
class NotificationExportResult:
    """Outcome of a catch-up export, shaped for display to the user."""

    status: ExportStatus
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def title(self) -> str:
        match self.status:
            case Success():
                return "Export Completed"
            case PartialSuccess():
                return "Partial Export"
            case Failure(retry_reminder=True):
                return "Device Was Locked"
            case Failure():
                return "Export Failed"
            case _:
                return "Up to Date"

    @property
    def message(self) -> str:
        match self.status:
            case Success(days_exported=1):
                return "Successfully exported yesterday's health data"
            case Success(days_exported=days):
                return f"Successfully exported {days} days of health data"
            case PartialSuccess(exported=exported, total=total):
                return f"Exported {exported} of {total} days"
            case Failure(retry_reminder=True):
                return "Tap to retry your health export"
            case Failure(reason=reason):
                return reason
            case _:
                return "Your health data is already up to date"

    @property
    def is_success(self) -> bool:
        return isinstance(self.status, (Success, NoExportNeeded))

    @property
    def needs_retry_reminder(self) -> bool:
        return isinstance(self.status, Failure) and self.status.retry_reminder
