"""
DraftSpine Key-Value Store
==========================

SQLite-backed durable key-value entries. The history lives in one entry
(see storage.py); the store itself knows nothing about versions.

Why SQLite:
- Atomic writes: a crash mid-save leaves the previous value intact
- Survives process restarts without a server
- Easy to inspect while debugging

Usage:
    store = KeyValueStore(Path("data/draftspine.db"))
    store.set("document-versions", blob)
    blob = store.get("document-versions")
"""

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


class KeyValueStore:
    """String values keyed by string, one SQLite table."""

    DB_VERSION = 1  # Bump when schema changes

    def __init__(self, db_path: Union[Path, str] = MEMORY):
        self.db_path = db_path
        if str(db_path) != MEMORY:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._stats = {"reads": 0, "writes": 0, "misses": 0}

        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self._init_schema()
        logger.info(f"[KVStore] Initialized: {self.db_path}")

    def _init_schema(self):
        """Create tables if not exist."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
        """)

        cursor.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        current_version = row[0] if row[0] else 0

        if current_version < self.DB_VERSION:
            cursor.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (self.DB_VERSION, datetime.now(timezone.utc).isoformat()),
            )
            logger.info(f"[KVStore] Schema upgraded to v{self.DB_VERSION}")

        self.conn.commit()

    def get(self, key: str) -> Optional[str]:
        """Value for `key`, or None if absent."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT value FROM kv_entries WHERE key = ?", (key,))
            row = cursor.fetchone()
            self._stats["reads"] += 1

        if row is None:
            self._stats["misses"] += 1
            return None
        return row["value"]

    def set(self, key: str, value: str) -> None:
        """Insert or replace `key` in a single transaction."""
        with self._lock:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO kv_entries (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (key, value, datetime.now(timezone.utc).isoformat()),
                )
            self._stats["writes"] += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            with self.conn:
                cursor = self.conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def keys(self) -> List[str]:
        with self._lock:
            cursor = self.conn.execute("SELECT key FROM kv_entries ORDER BY key")
            return [row["key"] for row in cursor.fetchall()]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            cursor = self.conn.execute("SELECT COUNT(*) AS total, MAX(updated_at) AS newest FROM kv_entries")
            row = cursor.fetchone()
            return {
                "entries": row["total"],
                "last_write": row["newest"],
                "db_path": str(self.db_path),
                **self._stats,
            }

    def close(self):
        """Close database connection."""
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
