"""Vault folder access and the per-day file writer."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from datetime import date
from pathlib import Path
from typing import Protocol

from .models import HealthRecord, WriteMode

logger = logging.getLogger(__name__)


class VaultAccessError(RuntimeError):
    """Raised when the vault folder cannot be opened for writing."""


class VaultAccess(Protocol):
    """Scoped access to the destination folder, started and stopped once per run."""

    def has_access(self) -> bool: ...

    def refresh(self) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


class RecordWriter(Protocol):
    def write(self, record: HealthRecord, day: date) -> bool: ...


def render_json(record: HealthRecord) -> str:
    return json.dumps(record.to_dict(), indent=2, sort_keys=True, default=str) + "\n"


class FolderVault:
    """:class:`VaultAccess` over a plain directory on disk."""

    def __init__(self, path: Path | None) -> None:
        self.path = path
        self._resolved: Path | None = None
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    def has_access(self) -> bool:
        return self.path is not None and self.path.expanduser().is_dir()

    def refresh(self) -> None:
        """Re-resolve the configured folder, following moves made through symlinks."""

        if self.path is None:
            self._resolved = None
            return
        resolved = self.path.expanduser().resolve()
        if resolved != self._resolved:
            logger.debug("Vault folder resolved to %s", resolved)
        self._resolved = resolved

    def start(self) -> None:
        target = self._resolved or (self.path.expanduser() if self.path else None)
        if target is None or not target.is_dir():
            raise VaultAccessError("No vault folder is available")
        if not os.access(target, os.W_OK | os.X_OK):
            raise VaultAccessError(f"Vault folder {target} is not writable")
        self._active = True
        logger.debug("Started vault access for %s", target)

    def stop(self) -> None:
        if self._active:
            logger.debug("Stopped vault access for %s", self._resolved or self.path)
        self._active = False


def format_for_day(template: str, day: date) -> str:
    """Expand the date placeholders in a filename or folder template.

    Supported placeholders are ``{date}`` (``YYYY-MM-DD``), ``{year}``,
    ``{month}``, ``{day}``, ``{weekday}`` and ``{monthName}``. Any other text,
    braces included, is kept as written.
    """

    replacements = {
        "{date}": day.isoformat(),
        "{year}": f"{day.year:04d}",
        "{month}": f"{day.month:02d}",
        "{day}": f"{day.day:02d}",
        "{weekday}": day.strftime("%A"),
        "{monthName}": day.strftime("%B"),
    }
    for placeholder, value in replacements.items():
        template = template.replace(placeholder, value)
    return template


class VaultWriter:
    """Write one file per day into ``<vault>/<subfolder>/<folder structure>``."""

    def __init__(
        self,
        vault_dir: Path,
        subfolder: str = "Health",
        *,
        filename_format: str = "{date}",
        folder_structure: str = "",
        write_mode: WriteMode = WriteMode.OVERWRITE,
        renderer: Callable[[HealthRecord], str] = render_json,
        extension: str = "json",
    ) -> None:
        self.vault_dir = vault_dir
        self.subfolder = subfolder.strip("/")
        self.filename_format = filename_format or "{date}"
        self.folder_structure = folder_structure.strip("/")
        self.write_mode = write_mode
        self.renderer = renderer
        self.extension = extension.lstrip(".")

    def destination_dir(self, day: date) -> Path:
        base = self.vault_dir.expanduser()
        if self.subfolder:
            base = base / self.subfolder
        if self.folder_structure:
            base = base / format_for_day(self.folder_structure, day)
        return base

    def destination_path(self, day: date) -> Path:
        filename = format_for_day(self.filename_format, day)
        return self.destination_dir(day) / f"{filename}.{self.extension}"

    def write(self, record: HealthRecord, day: date) -> bool:
        """Write ``record`` for ``day`` and return ``True`` once the file is in place.

        Filesystem errors are logged and re-raised after the temporary file is
        removed.
        """

        destination = self.destination_path(day)
        content = self.renderer(record)
        tmp_path = destination.with_name(f".{destination.name}.tmp")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            if self.write_mode is WriteMode.APPEND and destination.is_file():
                existing = destination.read_text(encoding="utf-8")
                if existing and not existing.endswith("\n"):
                    existing += "\n"
                content = existing + content
            tmp_path.write_text(content, encoding="utf-8")
            tmp_path.replace(destination)
        except OSError as exc:
            logger.warning("Failed to write %s: %s", destination, exc)
            if tmp_path.is_file():
                tmp_path.unlink()
            raise
        logger.debug("Exported %s", destination)
        return True
