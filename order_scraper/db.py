"""SQLite persistence for the collector session.

Purpose: keep the session record alive across page reloads and process restarts.
Each named field is one row; values are orjson-encoded. A ``set`` call writes all
of its fields in a single transaction, so a crash leaves either the old or the
new values, never a mix (last write wins).
"""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import orjson

from order_scraper.errors import StoreError

DB_PATH = Path(os.getenv("STATE_DB", "data/state.db"))

SCHEMA = """
CREATE TABLE IF NOT EXISTS collector_state (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


class StateStore:
    def __init__(self, path: Optional[Path | str] = None):
        self.path = Path(path) if path else DB_PATH
        self._initialised = False

    def get_conn(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(self.path)

    def init_db(self):
        if self._initialised:
            return
        try:
            with self.get_conn() as conn:
                conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"cannot initialise state db {self.path}: {e}") from e
        self._initialised = True

    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return a dict with every requested key; missing keys map to None."""
        keys = list(keys)
        self.init_db()
        out: Dict[str, Any] = {k: None for k in keys}
        if not keys:
            return out
        marks = ",".join("?" for _ in keys)
        try:
            with self.get_conn() as conn:
                cur = conn.execute(f"SELECT key, value FROM collector_state WHERE key IN ({marks})", keys)
                rows = cur.fetchall()
            for key, raw in rows:
                out[key] = orjson.loads(raw)
        except (sqlite3.Error, orjson.JSONDecodeError) as e:
            raise StoreError(f"cannot read state keys={keys}: {e}") from e
        return out

    def set(self, values: Dict[str, Any]):
        if not values:
            return
        self.init_db()
        rows = [(k, orjson.dumps(v)) for k, v in values.items()]
        try:
            with self.get_conn() as conn:
                conn.executemany(
                    "INSERT INTO collector_state(key, value, updated_at) VALUES(?, ?, CURRENT_TIMESTAMP) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=CURRENT_TIMESTAMP",
                    rows,
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"cannot write state keys={list(values)}: {e}") from e

    def clear(self, keys: Optional[Iterable[str]] = None):
        """Delete the given keys, or every key when ``keys`` is None."""
        self.init_db()
        try:
            with self.get_conn() as conn:
                if keys is None:
                    conn.execute("DELETE FROM collector_state")
                else:
                    keys = list(keys)
                    if keys:
                        marks = ",".join("?" for _ in keys)
                        conn.execute(f"DELETE FROM collector_state WHERE key IN ({marks})", keys)
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"cannot clear state: {e}") from e
