"""SQLite key/value storage with two scopes.

- durable: survives for the client's lifetime (holds the session id)
- session: one browsing session; cleared when it ends (holds per-session flags
  such as the lead-research latch and the rolling analysis context)
"""
import json
import os
import sqlite3
from datetime import datetime
from typing import Any, Optional

from ..config import DEFAULT_STATE_DB


class StateStore:
    def __init__(self, db_path: str = DEFAULT_STATE_DB):
        self.db_path = db_path
        if db_path != ':memory:':
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_tables()

    def _exec(self, sql: str, params: tuple = ()):  # helper
        cur = self.conn.cursor()
        cur.execute(sql, params)
        self.conn.commit()
        return cur

    def _init_tables(self):
        self._exec("""
        CREATE TABLE IF NOT EXISTS durable_kv (
          key TEXT PRIMARY KEY,
          value TEXT,
          updated_at TEXT NOT NULL
        );
        """)

        self._exec("""
        CREATE TABLE IF NOT EXISTS session_kv (
          session_id TEXT NOT NULL,
          key TEXT NOT NULL,
          value TEXT,
          updated_at TEXT NOT NULL,
          PRIMARY KEY (session_id, key)
        );
        """)

    # --- durable scope ---
    def get_durable(self, key: str, default: Any = None) -> Any:
        cur = self._exec("SELECT value FROM durable_kv WHERE key = ?", (key,))
        row = cur.fetchone()
        return json.loads(row['value']) if row else default

    def set_durable(self, key: str, value: Any) -> None:
        self._exec(
            "INSERT INTO durable_kv (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, json.dumps(value), datetime.utcnow().isoformat()),
        )

    def set_durable_if_absent(self, key: str, value: Any) -> Any:
        """Insert only when the key is missing; return whichever value is stored."""
        self._exec(
            "INSERT OR IGNORE INTO durable_kv (key, value, updated_at) VALUES (?, ?, ?)",
            (key, json.dumps(value), datetime.utcnow().isoformat()),
        )
        return self.get_durable(key)

    # --- session scope ---
    def get_session(self, session_id: str, key: str, default: Any = None) -> Any:
        cur = self._exec("SELECT value FROM session_kv WHERE session_id = ? AND key = ?", (session_id, key))
        row = cur.fetchone()
        return json.loads(row['value']) if row else default

    def set_session(self, session_id: str, key: str, value: Any) -> None:
        self._exec(
            "INSERT INTO session_kv (session_id, key, value, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(session_id, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (session_id, key, json.dumps(value), datetime.utcnow().isoformat()),
        )

    def delete_session(self, session_id: str, key: str) -> bool:
        cur = self._exec("DELETE FROM session_kv WHERE session_id = ? AND key = ?", (session_id, key))
        return cur.rowcount > 0

    def clear_session_scope(self, session_id: Optional[str] = None) -> int:
        """Drop session-scope entries (one session's, or all of them). Returns rows removed."""
        if session_id is None:
            cur = self._exec("DELETE FROM session_kv")
        else:
            cur = self._exec("DELETE FROM session_kv WHERE session_id = ?", (session_id,))
        return cur.rowcount

    def close(self) -> None:
        self.conn.close()
