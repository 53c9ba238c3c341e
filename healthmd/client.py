"""Sources of per-day health records."""

from __future__ import annotations

import json
import logging
from datetime import date
from pathlib import Path
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .config import Config
from .models import HealthRecord

logger = logging.getLogger(__name__)


class AcquisitionError(RuntimeError):
    """Raised when health data for a day cannot be fetched."""


class DeviceLockedError(AcquisitionError):
    """Raised when the data source is unreadable because the device is locked."""


class RecordSource(Protocol):
    def fetch(self, day: date) -> HealthRecord: ...


class HealthAPIClient:
    """Fetch daily records from a companion health data endpoint over HTTP.

    The endpoint serves ``GET {base_url}/records/YYYY-MM-DD`` and answers
    ``423 Locked`` while the device holding the data is locked.
    """

    def __init__(self, config: Config, *, client: httpx.Client | None = None) -> None:
        if not config.api_url:
            raise ValueError("HealthAPIClient requires config.api_url")
        self._base_url = config.api_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if config.api_token:
            headers["Authorization"] = f"Bearer {config.api_token}"
        self._client = client or httpx.Client(
            timeout=config.http_timeout,
            headers=headers,
            follow_redirects=True,
        )

    def close(self) -> None:
        self._client.close()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(4),
        reraise=True,
    )
    def _request_record(self, day: date) -> httpx.Response:
        return self._client.get(f"{self._base_url}/records/{day.isoformat()}")

    def fetch(self, day: date) -> HealthRecord:
        try:
            response = self._request_record(day)
        except httpx.TransportError as exc:
            raise AcquisitionError(f"Could not reach health data service: {exc}") from exc

        if response.status_code == 404:
            logger.debug("No record available for %s", day)
            return HealthRecord(date=day)
        if response.status_code == 423:
            raise DeviceLockedError("Health data is protected while the device is locked")
        if response.is_error:
            raise AcquisitionError(
                f"Health data service error: {response.status_code} {response.text[:200]}"
            )
        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise AcquisitionError(f"Invalid JSON for {day}: {exc}") from exc
        if not isinstance(payload, dict):
            raise AcquisitionError(f"Unexpected payload for {day}: {type(payload).__name__}")
        return HealthRecord.from_dict(payload, day=day)


class CachedRecordSource:
    """Read records synced from another device into ``<cache_dir>/YYYY-MM-DD.json``."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir

    def path_for(self, day: date) -> Path:
        return self.cache_dir / f"{day.isoformat()}.json"

    def store(self, record: HealthRecord) -> Path:
        path = self.path_for(record.date)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(record.to_dict(), default=str), encoding="utf-8")
        return path

    def import_payload(self, payload: dict[str, Any]) -> int:
        """Store every record of a sync payload and return how many were stored."""

        records = payload.get("health_records")
        if not isinstance(records, list):
            raise ValueError("sync payload must contain a 'health_records' list")
        stored = 0
        for item in records:
            if not isinstance(item, dict) or "date" not in item:
                logger.warning("Skipping malformed synced record")
                continue
            self.store(HealthRecord.from_dict(item))
            stored += 1
        logger.info(
            "Stored %d synced record(s) from %s",
            stored,
            payload.get("device_name") or "unknown device",
        )
        return stored

    def available_dates(self) -> list[date]:
        days: list[date] = []
        for path in self.cache_dir.glob("*.json"):
            try:
                days.append(date.fromisoformat(path.stem))
            except ValueError:
                continue
        return sorted(days)

    def fetch(self, day: date) -> HealthRecord:
        path = self.path_for(day)
        if not path.exists():
            return HealthRecord(date=day)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise AcquisitionError(f"Could not read cached record {path.name}: {exc}") from exc
        if not isinstance(payload, dict):
            raise AcquisitionError(f"Cached record {path.name} is not an object")
        return HealthRecord.from_dict(payload, day=day)
