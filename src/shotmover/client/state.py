"""Local persisted state.

This module provides:
- SettingsStore: SQLite-based key/value store

The store holds the sync high-water mark and small bits of state that
must survive restarts. Values are strings.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

HWM_KEY = "sync_hwm"


class SettingsStore:
    """SQLite-based key/value store."""

    def __init__(self, db_path: Path) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)

    @property
    def path(self) -> Path:
        """Get the database path."""
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> SettingsStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def get(self, key: str, default: str | None = None) -> str | None:
        """Get a value, or default if the key is not set."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT value FROM kv_store WHERE key = ?",
                (key,),
            )
            row = cursor.fetchone()
        return row["value"] if row else default

    def set(self, key: str, value: str) -> None:
        """Set a value."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                (key, value),
            )

    # === Sync high-water mark ===

    def get_hwm(self) -> str | None:
        """Get the persisted sync high-water mark (ISO-8601)."""
        return self.get(HWM_KEY)

    def set_hwm(self, value: str) -> None:
        """Persist the sync high-water mark (ISO-8601)."""
        self.set(HWM_KEY, value)
