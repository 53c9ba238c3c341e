"""SQLite-backed store for the exporter's persisted settings and history."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    name TEXT PRIMARY KEY,
    body TEXT NOT NULL,
    saved_at TEXT NOT NULL
);
"""


class Database:
    """Keep JSON documents in a single SQLite table, one row per name.

    The scheduler thread and the background delivery consumer share the same
    connection, so every statement runs under one re-entrant lock.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(self.path, check_same_thread=False)
            return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def initialize_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside a commit-or-rollback block."""

        with self._lock:
            conn = self.connect()
            with conn:
                yield conn

    def get_json(self, key: str) -> Any | None:
        """Return the document stored under ``key``, or ``None`` when absent."""

        with self.transaction() as conn:
            row = conn.execute("SELECT body FROM documents WHERE name = ?", (key,)).fetchone()
        return None if row is None else json.loads(row[0])

    def set_json(self, key: str, value: Any) -> None:
        saved_at = datetime.now(UTC).isoformat(timespec="seconds")
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO documents (name, body, saved_at) VALUES (?, ?, ?)",
                (key, json.dumps(value, sort_keys=True), saved_at),
            )
