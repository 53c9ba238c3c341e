"""Configuration loading utilities for healthmd."""

from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path

from .models import DataTypeSelection, WriteMode

DEFAULT_HEALTH_SUBFOLDER = "Health"
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_BACKGROUND_BUDGET = 1800.0
DEFAULT_CHECK_INTERVAL_MINUTES = 30
DEFAULT_FILENAME_FORMAT = "{date}"


class ConfigError(RuntimeError):
    """Raised when the runtime configuration is invalid."""


def _optional_path(value: object) -> Path | None:
    if value is None or value == "":
        return None
    return Path(str(value)).expanduser()


def _optional_float(value: object) -> float | None:
    if value is None or value == "":
        return None
    return float(value)  # type: ignore[arg-type]


def _data_types(value: object) -> DataTypeSelection:
    if isinstance(value, DataTypeSelection):
        return value
    if value is None or value == "":
        return DataTypeSelection()
    names = value.split(",") if isinstance(value, str) else value
    cleaned = (str(name).strip().lower() for name in names)  # type: ignore[union-attr]
    try:
        return DataTypeSelection(frozenset(name for name in cleaned if name))
    except ValueError as exc:
        raise ConfigError(f"HEALTHMD_DATA_TYPES: {exc}") from exc


def _write_mode(value: object) -> WriteMode:
    if isinstance(value, WriteMode):
        return value
    try:
        return WriteMode(str(value).strip().lower())
    except ValueError as exc:
        raise ConfigError(
            f"HEALTHMD_WRITE_MODE must be overwrite or append, got {value!r}"
        ) from exc


@dataclass(slots=True)
class Config:
    """Runtime configuration for the exporter."""

    vault_dir: Path | None = None
    health_subfolder: str = DEFAULT_HEALTH_SUBFOLDER
    filename_format: str = DEFAULT_FILENAME_FORMAT
    folder_structure: str = ""
    write_mode: WriteMode = WriteMode.OVERWRITE
    data_types: DataTypeSelection = field(default_factory=DataTypeSelection)
    data_dir: Path = field(default_factory=lambda: Path("data"))
    sqlite_path: Path = field(default_factory=lambda: Path("data/sqlite/healthmd.db"))
    cache_dir: Path = field(default_factory=lambda: Path("data/cache"))
    api_url: str | None = None
    api_token: str | None = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    fetch_timeout: float | None = None
    background_budget_seconds: float = DEFAULT_BACKGROUND_BUDGET
    check_interval_minutes: int = DEFAULT_CHECK_INTERVAL_MINUTES
    webhook_url: str | None = None
    metrics_port: int | None = None

    @classmethod
    def from_env(
        cls, env: Mapping[str, str] | MutableMapping[str, str] | None = None, **overrides: object
    ) -> Config:
        """Create a :class:`Config` instance from environment variables."""

        env = env if env is not None else os.environ
        data_dir = Path(overrides.pop("data_dir", env.get("HEALTHMD_DATA_DIR", "data")))
        sqlite_path = Path(
            overrides.pop(
                "sqlite_path",
                env.get("HEALTHMD_SQLITE_PATH", data_dir / "sqlite" / "healthmd.db"),
            )
        )
        cache_dir = Path(
            overrides.pop("cache_dir", env.get("HEALTHMD_CACHE_DIR", data_dir / "cache"))
        )
        metrics_port = overrides.pop("metrics_port", env.get("HEALTHMD_METRICS_PORT", ""))

        config = cls(
            vault_dir=_optional_path(
                overrides.pop("vault_dir", env.get("HEALTHMD_VAULT_DIR"))
            ),
            health_subfolder=str(
                overrides.pop(
                    "health_subfolder",
                    env.get("HEALTHMD_HEALTH_SUBFOLDER", DEFAULT_HEALTH_SUBFOLDER),
                )
            ),
            filename_format=str(
                overrides.pop(
                    "filename_format",
                    env.get("HEALTHMD_FILENAME_FORMAT", DEFAULT_FILENAME_FORMAT),
                )
            )
            or DEFAULT_FILENAME_FORMAT,
            folder_structure=str(
                overrides.pop("folder_structure", env.get("HEALTHMD_FOLDER_STRUCTURE", ""))
            ),
            write_mode=_write_mode(
                overrides.pop("write_mode", env.get("HEALTHMD_WRITE_MODE", "overwrite"))
            ),
            data_types=_data_types(overrides.pop("data_types", env.get("HEALTHMD_DATA_TYPES"))),
            data_dir=data_dir,
            sqlite_path=sqlite_path,
            cache_dir=cache_dir,
            api_url=(
                str(api_url)
                if (api_url := overrides.pop("api_url", env.get("HEALTHMD_API_URL")))
                else None
            ),
            api_token=(
                str(token)
                if (token := overrides.pop("api_token", env.get("HEALTHMD_API_TOKEN")))
                else None
            ),
            http_timeout=float(
                overrides.pop(
                    "http_timeout", env.get("HEALTHMD_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)
                )
            ),
            fetch_timeout=_optional_float(
                overrides.pop("fetch_timeout", env.get("HEALTHMD_FETCH_TIMEOUT"))
            ),
            background_budget_seconds=float(
                overrides.pop(
                    "background_budget_seconds",
                    env.get("HEALTHMD_BACKGROUND_BUDGET", DEFAULT_BACKGROUND_BUDGET),
                )
            ),
            check_interval_minutes=int(
                overrides.pop(
                    "check_interval_minutes",
                    env.get("HEALTHMD_CHECK_INTERVAL_MINUTES", DEFAULT_CHECK_INTERVAL_MINUTES),
                )
            ),
            webhook_url=(
                str(webhook)
                if (webhook := overrides.pop("webhook_url", env.get("HEALTHMD_WEBHOOK_URL")))
                else None
            ),
            metrics_port=int(metrics_port) if metrics_port else None,
        )

        if overrides:
            unexpected = ", ".join(sorted(overrides))
            raise ConfigError(f"Unexpected configuration overrides: {unexpected}")
        if config.check_interval_minutes <= 0:
            raise ConfigError("HEALTHMD_CHECK_INTERVAL_MINUTES must be positive")
        if config.background_budget_seconds <= 0:
            raise ConfigError("HEALTHMD_BACKGROUND_BUDGET must be positive")

        config.ensure_directories()
        return config

    def ensure_directories(self) -> None:
        """Ensure that filesystem paths required by the exporter exist."""

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def as_dict(self) -> dict[str, object]:
        """Serialize configuration to a mapping for debugging or logging."""

        return {
            "vault_dir": str(self.vault_dir) if self.vault_dir else None,
            "health_subfolder": self.health_subfolder,
            "filename_format": self.filename_format,
            "folder_structure": self.folder_structure,
            "write_mode": self.write_mode.value,
            "data_types": sorted(self.data_types.enabled),
            "data_dir": str(self.data_dir),
            "sqlite_path": str(self.sqlite_path),
            "cache_dir": str(self.cache_dir),
            "api_url": self.api_url,
            "http_timeout": self.http_timeout,
            "fetch_timeout": self.fetch_timeout,
            "background_budget_seconds": self.background_budget_seconds,
            "check_interval_minutes": self.check_interval_minutes,
            "webhook_url": self.webhook_url,
            "metrics_port": self.metrics_port,
        }
