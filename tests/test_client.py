import dataclasses
import json
from datetime import date

import httpx
import pytest

from healthmd.client import (
    AcquisitionError,
    CachedRecordSource,
    DeviceLockedError,
    HealthAPIClient,
)
from healthmd.config import Config

DAY = date(2026, 3, 11)


def _client(config: Config, handler) -> HealthAPIClient:  # type: ignore[no-untyped-def]
    config = dataclasses.replace(config, api_url="https://health.test/api/", api_token="secret")
    return HealthAPIClient(config, client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_fetch_parses_record(temp_config: Config) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"activity": {"steps": 8042}, "workouts": [{"type": "run"}], "extra": 1},
        )

    record = _client(temp_config, handler).fetch(DAY)

    assert seen[0].url.path == "/api/records/2026-03-11"
    assert record.date == DAY
    assert record.categories == {"activity": {"steps": 8042}}
    assert record.workouts == [{"type": "run"}]
    assert record.has_any_data


def test_missing_record_is_empty(temp_config: Config) -> None:
    record = _client(temp_config, lambda request: httpx.Response(404)).fetch(DAY)

    assert record.date == DAY
    assert not record.has_any_data


def test_locked_device_raises_device_locked(temp_config: Config) -> None:
    client = _client(temp_config, lambda request: httpx.Response(423))

    with pytest.raises(DeviceLockedError):
        client.fetch(DAY)


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="boom"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=[1, 2, 3]),
    ],
)
def test_bad_responses_raise_acquisition_error(
    temp_config: Config, response: httpx.Response
) -> None:
    client = _client(temp_config, lambda request: response)

    with pytest.raises(AcquisitionError) as excinfo:
        client.fetch(DAY)

    assert not isinstance(excinfo.value, DeviceLockedError)


def test_transport_errors_are_retried(temp_config: Config, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(HealthAPIClient._request_record.retry, "sleep", lambda seconds: None)
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise httpx.ConnectError("unreachable", request=request)
        return httpx.Response(200, json={"sleep": {"asleep_minutes": 420}})

    record = _client(temp_config, handler).fetch(DAY)

    assert attempts == 3
    assert record.categories["sleep"]["asleep_minutes"] == 420


def test_client_requires_api_url(temp_config: Config) -> None:
    with pytest.raises(ValueError):
        HealthAPIClient(temp_config)


def test_cached_source_imports_sync_payload(temp_config: Config) -> None:
    source = CachedRecordSource(temp_config.cache_dir)
    payload = {
        "device_name": "Phone",
        "health_records": [
            {"date": "2026-03-10", "heart": {"resting": 54}},
            {"date": "2026-03-11", "activity": {"steps": 6000}},
            "garbage",
        ],
    }

    assert source.import_payload(payload) == 2
    assert source.available_dates() == [date(2026, 3, 10), DAY]
    assert source.fetch(DAY).categories == {"activity": {"steps": 6000}}


def test_cached_source_handles_missing_and_corrupt_files(temp_config: Config) -> None:
    source = CachedRecordSource(temp_config.cache_dir)

    assert not source.fetch(date(2026, 1, 1)).has_any_data

    source.path_for(DAY).write_text("{broken", encoding="utf-8")
    with pytest.raises(AcquisitionError):
        source.fetch(DAY)

    source.path_for(DAY).write_text(json.dumps([1]), encoding="utf-8")
    with pytest.raises(AcquisitionError):
        source.fetch(DAY)


def test_import_payload_requires_record_list(temp_config: Config) -> None:
    with pytest.raises(ValueError):
        CachedRecordSource(temp_config.cache_dir).import_payload({"records": []})
