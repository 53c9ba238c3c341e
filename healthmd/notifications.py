"""User-facing export messages and their delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from rich.console import Console

from .config import Config
from .models import ExportResult, FailureReason, NotificationExportResult

logger = logging.getLogger(__name__)


def _files(count: int) -> str:
    return f"{count} file{'' if count == 1 else 's'}"


def describe_result(result: ExportResult) -> str:
    """Return the status line shown after a manual export finishes."""

    if result.was_cancelled and result.primary_failure_reason is not FailureReason.TASK_EXPIRED:
        if result.success_count > 0:
            return f"Export stopped: {result.success_count} of {_files(result.total_count)} exported"
        return "Export cancelled"
    if result.is_full_success:
        return f"Successfully exported {_files(result.success_count)}"
    if result.success_count > 0:
        failed = ", ".join(detail.date_string for detail in result.failed_dates)
        return (
            f"Exported {result.success_count}/{result.total_count} files. Failed: {failed}"
        )
    if result.total_count == 0:
        return "Nothing to export"
    reason = result.primary_failure_reason or FailureReason.UNKNOWN
    return f"Export failed: {reason.short_description}"


def describe_failure(result: ExportResult) -> str | None:
    """Detailed explanation of the first failure, for a blocking error surface."""

    if result.success_count > 0 or not result.failed_dates:
        return None
    return result.failed_dates[0].detailed_message


@dataclass(slots=True)
class Notification:
    title: str
    body: str
    is_reminder: bool = False


def completed_notification(days_exported: int) -> Notification:
    body = (
        "Successfully exported yesterday's health data"
        if days_exported == 1
        else f"Successfully exported {days_exported} days of health data"
    )
    return Notification(title="Export Completed", body=body)


def reminder_notification() -> Notification:
    return Notification(
        title="Device Was Locked",
        body="Tap to retry your health export",
        is_reminder=True,
    )


def failed_notification(
    reason: FailureReason | None, error_details: str | None = None
) -> Notification:
    if reason is not None:
        body = reason.short_description
        if error_details:
            body += f": {error_details}"
    elif error_details:
        body = error_details
    else:
        body = "Failed to export health data. Please check your settings."
    return Notification(title="Export Failed", body=body)


def notification_for_run(result: ExportResult) -> Notification | None:
    """Pick the notification for an unattended run, or ``None`` for an empty run."""

    if result.total_count == 0:
        return None
    if result.success_count > 0:
        return completed_notification(result.success_count)
    if result.all_failed_device_locked:
        return reminder_notification()
    reason = result.primary_failure_reason
    details = result.failed_dates[0].raw_error_text if result.failed_dates else None
    return failed_notification(reason, details)


def notification_for_catch_up(outcome: NotificationExportResult) -> Notification:
    return Notification(
        title=outcome.title,
        body=outcome.message,
        is_reminder=outcome.needs_retry_reminder,
    )


class Notifier:
    """Deliver notifications to the console and, when configured, a webhook."""

    def __init__(
        self,
        config: Config,
        *,
        console: Console | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config
        self._console = console or Console(stderr=True)
        self._client = client

    def send(self, notification: Notification) -> None:
        style = "yellow" if notification.is_reminder else "bold"
        self._console.print(f"[{style}]{notification.title}[/{style}]: {notification.body}")
        logger.info("Notification sent: %s", notification.title)
        if self.config.webhook_url:
            self._send_webhook(self.config.webhook_url, notification)

    def _send_webhook(self, url: str, notification: Notification) -> None:
        payload = {
            "title": notification.title,
            "body": notification.body,
            "kind": "reminder" if notification.is_reminder else "export",
        }
        try:
            if self._client is not None:
                response = self._client.post(url, json=payload)
            else:
                response = httpx.post(url, json=payload, timeout=self.config.http_timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Failed to deliver notification to %s: %s", url, exc)
