"""
Key-value store for Penny - whole-document JSON persistence on SQLite
"""

import asyncio
import json
import os
import sqlite3
from datetime import datetime
from typing import Any, List, Optional


def default_db_path() -> str:
    # Default to <project>/db/penny.db relative to this file
    base_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))
    return os.path.join(base_dir, "db", "penny.db")


class SQLiteKeyValueStore:
    """
    Opaque get/set/remove persistence for JSON documents.

    Every call runs the blocking sqlite work in a thread so callers can
    await it from the event loop. Writes replace the whole document.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or default_db_path()

        # Ensure directory exists
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)

        self._init_tables()

    def _init_tables(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP
                )
            """)

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def _get(self, key: str) -> Optional[Any]:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cur.fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def _set(self, key: str, value: Any):
        payload = json.dumps(value)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """, (key, payload, datetime.now().isoformat()))

    def _remove(self, key: str):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    def _keys(self, prefix: str) -> List[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute(
                "SELECT key FROM kv_store WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (escaped + "%",),
            )
            return [row[0] for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded JSON document stored under key, or None."""
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: Any):
        """Store a JSON-serializable document under key, replacing any previous one."""
        await asyncio.to_thread(self._set, key, value)

    async def remove(self, key: str):
        await asyncio.to_thread(self._remove, key)

    async def keys(self, prefix: str = "") -> List[str]:
        """List stored keys starting with prefix."""
        return await asyncio.to_thread(self._keys, prefix)


class MemoryKeyValueStore:
    """Dict-backed store with the same async API, for dry runs and tests."""

    def __init__(self):
        self._data = {}

    async def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any):
        # Round-trip through JSON so callers never share mutable state with the store
        self._data[key] = json.dumps(value)

    async def remove(self, key: str):
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))
