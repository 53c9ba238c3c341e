"""Channel for "new health data available" events and the catch-up consumer."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .models import NotificationExportResult
from .service import ExportService

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DataAvailableEvent:
    """Pushed by a data source when it has new samples."""

    source: str = "health"
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class BackgroundDeliveryChannel:
    """Thread-safe queue connecting data sources to the catch-up consumer."""

    def __init__(self) -> None:
        self._queue: queue.Queue[DataAvailableEvent] = queue.Queue()

    def publish(self, event: DataAvailableEvent | None = None) -> None:
        self._queue.put_nowait(event or DataAvailableEvent())

    def get(self, timeout: float | None = None) -> DataAvailableEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[DataAvailableEvent]:
        """Remove and return every queued event without blocking."""

        events: list[DataAvailableEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class CacheWatcher:
    """Publish an event whenever the synced-record cache gains or changes a file."""

    def __init__(self, cache_dir: Path, channel: BackgroundDeliveryChannel) -> None:
        self.cache_dir = cache_dir
        self.channel = channel
        self._last_seen = self._latest_mtime()

    def _latest_mtime(self) -> float:
        return max((path.stat().st_mtime for path in self.cache_dir.glob("*.json")), default=0.0)

    def poll(self) -> bool:
        latest = self._latest_mtime()
        if latest <= self._last_seen:
            return False
        self._last_seen = latest
        self.channel.publish(DataAvailableEvent(source="cache"))
        return True


class BackgroundDeliveryConsumer:
    """Decide whether a data-available event should trigger a catch-up export."""

    def __init__(
        self,
        channel: BackgroundDeliveryChannel,
        service: ExportService,
        *,
        poll_seconds: float = 1.0,
    ) -> None:
        self.channel = channel
        self.service = service
        self.poll_seconds = poll_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def handle(self, event: DataAvailableEvent) -> NotificationExportResult | None:
        """Run catch-up for ``event`` if the schedule is on and data-days are missing."""

        logger.info("Background delivery received from %s", event.source)
        planner = self.service.planner
        if not planner.schedule.is_enabled:
            logger.info("Schedule disabled, ignoring background delivery")
            return None
        if not planner.catch_up_dates(self.service.now()):
            logger.info("Yesterday's data already exported, skipping")
            return None
        logger.info("Triggering export from background delivery")
        return self.service.run_catch_up_export()

    def process_pending(self) -> NotificationExportResult | None:
        """Collapse all queued events into at most one catch-up attempt."""

        events = self.channel.drain()
        if not events:
            return None
        return self.handle(events[-1])

    def run(self) -> None:
        while not self._stop_event.is_set():
            event = self.channel.get(timeout=self.poll_seconds)
            if event is None:
                continue
            # Events that piled up during a long export need only one more check.
            self.channel.drain()
            try:
                self.handle(event)
            except Exception:
                logger.exception("Background delivery handling failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, name="healthmd-background-delivery", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
