"""Top-level package for the healthmd exporter."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("healthmd")
except PackageNotFoundError:  # pragma: no cover - best effort during development
    __version__ = "0.0.0"

__all__ = ["__version__"]
