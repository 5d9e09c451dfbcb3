import sqlite3
import time
from pathlib import Path
from typing import Optional, Dict


class KeyValueStore:
    """Small sqlite table standing in for the browser's local/session storage.

    Rows live under a scope (`local` survives restarts, `session` is cleared
    by `clear_scope("session")` when a kiosk session ends).
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._init()

    def _conn(self):
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def _init(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        else:
            # a fresh :memory: connection per call would lose every row
            self._memory = sqlite3.connect(":memory:", check_same_thread=False)
            self._conn = lambda: self._memory
        with self._conn() as c:
            c.execute("""
            CREATE TABLE IF NOT EXISTS kv (
              scope TEXT NOT NULL,
              key TEXT NOT NULL,
              value TEXT,
              updated_at_ms INTEGER NOT NULL,
              PRIMARY KEY (scope, key)
            )
            """)
            c.commit()

    def set(self, scope: str, key: str, value: Optional[str]):
        now = int(time.time() * 1000)
        with self._conn() as c:
            c.execute(
                "INSERT OR REPLACE INTO kv(scope,key,value,updated_at_ms) VALUES(?,?,?,?)",
                (scope, key, value, now),
            )
            c.commit()

    def get(self, scope: str, key: str) -> Optional[str]:
        with self._conn() as c:
            cur = c.execute("SELECT value FROM kv WHERE scope=? AND key=?", (scope, key))
            row = cur.fetchone()
            return row[0] if row else None

    def remove(self, scope: str, key: str):
        with self._conn() as c:
            c.execute("DELETE FROM kv WHERE scope=? AND key=?", (scope, key))
            c.commit()

    def items(self, scope: str) -> Dict[str, Optional[str]]:
        with self._conn() as c:
            cur = c.execute("SELECT key,value FROM kv WHERE scope=?", (scope,))
            return {row[0]: row[1] for row in cur.fetchall()}

    def clear_scope(self, scope: str):
        with self._conn() as c:
            c.execute("DELETE FROM kv WHERE scope=?", (scope,))
            c.commit()
