from pathlib import Path

import pytest

from healthmd.config import Config, ConfigError
from healthmd.models import DataTypeSelection, WriteMode


def test_from_env_reads_variables(tmp_path: Path) -> None:
    env = {
        "HEALTHMD_DATA_DIR": str(tmp_path / "data"),
        "HEALTHMD_VAULT_DIR": str(tmp_path / "vault"),
        "HEALTHMD_HEALTH_SUBFOLDER": "Journal/Health",
        "HEALTHMD_API_URL": "https://health.test",
        "HEALTHMD_FETCH_TIMEOUT": "12.5",
        "HEALTHMD_CHECK_INTERVAL_MINUTES": "15",
        "HEALTHMD_METRICS_PORT": "9500",
    }

    config = Config.from_env(env)

    assert config.vault_dir == tmp_path / "vault"
    assert config.health_subfolder == "Journal/Health"
    assert config.sqlite_path == tmp_path / "data" / "sqlite" / "healthmd.db"
    assert config.cache_dir.is_dir()
    assert config.api_url == "https://health.test"
    assert config.api_token is None
    assert config.fetch_timeout == 12.5
    assert config.check_interval_minutes == 15
    assert config.metrics_port == 9500
    assert config.http_timeout == 30.0
    assert config.background_budget_seconds == 1800.0


def test_defaults_leave_optional_settings_off(tmp_path: Path) -> None:
    config = Config.from_env({}, data_dir=tmp_path)

    assert config.vault_dir is None
    assert config.health_subfolder == "Health"
    assert config.fetch_timeout is None
    assert config.metrics_port is None
    assert config.filename_format == "{date}"
    assert config.folder_structure == ""
    assert config.write_mode is WriteMode.OVERWRITE
    assert config.data_types == DataTypeSelection()
    assert config.as_dict()["vault_dir"] is None


def test_unexpected_override_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        Config.from_env({}, data_dir=tmp_path, colour="blue")


@pytest.mark.parametrize(
    "key", ["HEALTHMD_CHECK_INTERVAL_MINUTES", "HEALTHMD_BACKGROUND_BUDGET"]
)
def test_non_positive_intervals_are_rejected(tmp_path: Path, key: str) -> None:
    with pytest.raises(ConfigError):
        Config.from_env({key: "0"}, data_dir=tmp_path)


def test_export_layout_settings_from_env(tmp_path: Path) -> None:
    env = {
        "HEALTHMD_FILENAME_FORMAT": "{weekday} {date}",
        "HEALTHMD_FOLDER_STRUCTURE": "{year}/{month}",
        "HEALTHMD_WRITE_MODE": "Append",
        "HEALTHMD_DATA_TYPES": "sleep, Heart,workouts,",
    }

    config = Config.from_env(env, data_dir=tmp_path)

    assert config.filename_format == "{weekday} {date}"
    assert config.folder_structure == "{year}/{month}"
    assert config.write_mode is WriteMode.APPEND
    assert config.data_types == DataTypeSelection.of("sleep", "heart", "workouts")
    assert config.as_dict()["data_types"] == ["heart", "sleep", "workouts"]


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("HEALTHMD_WRITE_MODE", "prepend"),
        ("HEALTHMD_DATA_TYPES", "sleep,weather"),
        ("HEALTHMD_DATA_TYPES", " , "),
    ],
)
def test_invalid_export_layout_settings_are_rejected(
    tmp_path: Path, key: str, value: str
) -> None:
    with pytest.raises(ConfigError):
        Config.from_env({key: value}, data_dir=tmp_path)
