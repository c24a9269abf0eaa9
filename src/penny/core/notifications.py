"""
Notification Dispatcher - local ledger of immediate and scheduled notifications
"""

import asyncio
import json
import os
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from penny.db.kv_store import default_db_path


class LocalNotificationDispatcher:
    """
    Records notifications in SQLite. Delivery to a device is out of scope;
    a notification is "sent" once it lands in the ledger.
    """

    def __init__(self, db_path: Optional[str] = None, clock=datetime.now):
        self.db_path = db_path or default_db_path()
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        self._clock = clock
        self._init_notification_tables()

    def _init_notification_tables(self):
        """Initialize notification tables"""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_notifications (
                    identifier TEXT PRIMARY KEY,
                    title TEXT,
                    body TEXT,
                    data TEXT,
                    deliver_at TIMESTAMP,
                    status TEXT DEFAULT 'pending',
                    created_at TIMESTAMP
                )
            """)

    def _insert(self, identifier: str, title: str, body: str, data: Dict[str, Any],
                deliver_at: datetime, status: str):
        now = self._clock().isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO scheduled_notifications
                (identifier, title, body, data, deliver_at, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (identifier, title, body, json.dumps(data or {}), deliver_at.isoformat(), status, now))

    def _cancel(self, identifier: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute("""
                UPDATE scheduled_notifications SET status = 'cancelled'
                WHERE identifier = ? AND status = 'pending'
            """, (identifier,))
            return cur.rowcount > 0

    def _list(self, status: Optional[str]) -> List[Dict[str, Any]]:
        query = "SELECT identifier, title, body, data, deliver_at, status FROM scheduled_notifications"
        params: tuple = ()
        if status:
            query += " WHERE status = ?"
            params = (status,)
        query += " ORDER BY deliver_at"
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                "identifier": row[0],
                "title": row[1],
                "body": row[2],
                "data": json.loads(row[3]) if row[3] else {},
                "deliver_at": row[4],
                "status": row[5],
            }
            for row in rows
        ]

    async def schedule_immediate(self, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> str:
        """Deliver a notification now; returns its generated identifier."""
        identifier = f"notif_{uuid.uuid4().hex[:12]}"
        await asyncio.to_thread(self._insert, identifier, title, body, data or {}, self._clock(), "delivered")
        return identifier

    async def schedule_at(self, identifier: str, title: str, body: str,
                          data: Optional[Dict[str, Any]], when: datetime) -> str:
        """Schedule a notification under a caller-chosen identifier."""
        await asyncio.to_thread(self._insert, identifier, title, body, data or {}, when, "pending")
        return identifier

    async def cancel(self, identifier: str) -> bool:
        """Cancel a pending notification. Returns False if nothing was pending."""
        return await asyncio.to_thread(self._cancel, identifier)

    async def list_notifications(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._list, status)
