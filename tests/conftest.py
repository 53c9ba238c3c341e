from datetime import date
from pathlib import Path

import pytest

from healthmd.config import Config
from healthmd.db import Database
from healthmd.models import HealthRecord


class StubSource:
    """Record source returning one step count per day unless told otherwise."""

    def __init__(
        self,
        failures: dict[date, Exception] | None = None,
        empty_days: set[date] | None = None,
    ) -> None:
        self.failures = failures or {}
        self.empty_days = empty_days or set()
        self.calls: list[date] = []

    def fetch(self, day: date) -> HealthRecord:
        self.calls.append(day)
        if day in self.failures:
            raise self.failures[day]
        if day in self.empty_days:
            return HealthRecord(date=day)
        return HealthRecord(date=day, categories={"activity": {"steps": 1000 + day.day}})


class StubWriter:
    def __init__(self, failing_days: set[date] | None = None) -> None:
        self.failing_days = failing_days or set()
        self.written: list[date] = []

    def write(self, record: HealthRecord, day: date) -> bool:
        if day in self.failing_days:
            return False
        self.written.append(day)
        return True


class StubVault:
    def __init__(self, *, access: bool = True, start_error: Exception | None = None) -> None:
        self.access = access
        self.start_error = start_error
        self.refresh_calls = 0
        self.start_calls = 0
        self.stop_calls = 0

    def has_access(self) -> bool:
        return self.access

    def refresh(self) -> None:
        self.refresh_calls += 1

    def start(self) -> None:
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error

    def stop(self) -> None:
        self.stop_calls += 1


class FakeClock:
    def __init__(self, value: float = 0.0) -> None:
        self.value = value

    def __call__(self) -> float:
        return self.value


@pytest.fixture()
def temp_config(tmp_path: Path) -> Config:
    data_dir = tmp_path / "data"
    vault_dir = tmp_path / "vault"
    vault_dir.mkdir()
    config = Config(
        vault_dir=vault_dir,
        data_dir=data_dir,
        sqlite_path=data_dir / "sqlite" / "test.db",
        cache_dir=data_dir / "cache",
    )
    config.ensure_directories()
    return config


@pytest.fixture()
def database(temp_config: Config) -> Database:
    db = Database(temp_config.sqlite_path)
    db.initialize_schema()
    yield db
    db.close()
