"""SQLite-backed key-value store for cross-restart health and cache state.

Uses WAL mode + NORMAL synchronous for fast writes while retaining
crash safety.  Values are opaque JSON strings written by
``AggregationEngine.save_state``.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from typing import Optional

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT NOT NULL,
  updated_ts REAL NOT NULL
);
"""


class SqliteStore:
    """Key-value store backed by SQLite."""

    def __init__(self, path: str) -> None:
        # The engine may save from a worker thread on close().
        self.conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")
        self.conn.executescript(SCHEMA)
        self._lock = threading.Lock()

    # ── Key-value ───────────────────────────────────────────────

    def get_kv(self, k: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT v FROM kv WHERE k=?", (k,)).fetchone()
        return row[0] if row else None

    def set_kv(self, k: str, v: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO kv(k,v,updated_ts) VALUES(?,?,?) "
                "ON CONFLICT(k) DO UPDATE SET v=excluded.v, updated_ts=excluded.updated_ts",
                (k, v, time.time()),
            )

    def delete_kv(self, k: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM kv WHERE k=?", (k,))

    def close(self) -> None:
        with self._lock:
            self.conn.close()
