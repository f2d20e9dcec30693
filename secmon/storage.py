# secmon/storage.py

import json
import os
import sqlite3
import threading
from typing import Dict, List, Optional

from .models import SecurityAlert, SecurityEvent


class SQLiteStorage:
    """
    Local persistence for IP blocks, alerts and (optionally) archived events.

    One connection shared across threads; writes go through a lock.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        if self.conn is not None:
            with self._lock:
                self.conn.close()
                self.conn = None

    def init_db(self) -> None:
        assert self.conn is not None
        with self._lock:
            cur = self.conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS blocked_ips (
                    ip_address TEXT PRIMARY KEY,
                    blocked_until REAL,
                    reason TEXT,
                    created_at REAL DEFAULT (strftime('%s', 'now'))
                )
                """
            )

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS alerts (
                    id TEXT PRIMARY KEY,
                    timestamp REAL,
                    rule_id TEXT,
                    severity TEXT,
                    ip_address TEXT,
                    user_id TEXT,
                    message TEXT
                )
                """
            )

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id TEXT PRIMARY KEY,
                    timestamp REAL,
                    type TEXT,
                    severity TEXT,
                    ip_address TEXT,
                    user_id TEXT,
                    endpoint TEXT,
                    method TEXT,
                    payload TEXT,
                    metadata TEXT
                )
                """
            )

            self.conn.commit()

    # -------------- blocks --------------

    def persist_block(self, ip_address: str, blocked_until: float, reason: str) -> None:
        assert self.conn is not None
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO blocked_ips (ip_address, blocked_until, reason)
                VALUES (?, ?, ?)
                ON CONFLICT(ip_address) DO UPDATE SET
                    blocked_until = excluded.blocked_until,
                    reason = excluded.reason
                """,
                (ip_address, blocked_until, reason),
            )
            self.conn.commit()

    def remove_block(self, ip_address: str) -> bool:
        assert self.conn is not None
        with self._lock:
            cur = self.conn.execute(
                "DELETE FROM blocked_ips WHERE ip_address = ?", (ip_address,)
            )
            self.conn.commit()
            return cur.rowcount > 0

    def fetch_active_blocks(self, now: float) -> List[Dict]:
        """Blocks whose expiry is still in the future."""
        assert self.conn is not None
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT ip_address, blocked_until, reason
                FROM blocked_ips
                WHERE blocked_until > ?
                ORDER BY blocked_until DESC
                """,
                (now,),
            ).fetchall()
        return [
            {
                "ip_address": row["ip_address"],
                "blocked_until": row["blocked_until"],
                "reason": row["reason"],
            }
            for row in rows
        ]

    # -------------- alerts --------------

    def insert_alert(self, alert: SecurityAlert) -> None:
        assert self.conn is not None
        with self._lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO alerts
                    (id, timestamp, rule_id, severity, ip_address, user_id, message)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.id,
                    alert.timestamp,
                    alert.rule_id,
                    alert.severity.value,
                    alert.event.ip_address,
                    alert.event.user_id,
                    alert.message,
                ),
            )
            self.conn.commit()

    def fetch_alerts(
        self,
        severity: Optional[str] = None,
        limit: int = 500,
    ) -> List[Dict]:
        """
        Return alerts as a list of dictionaries, optional severity filter.
        """
        assert self.conn is not None
        with self._lock:
            cur = self.conn.cursor()
            if severity:
                cur.execute(
                    """
                    SELECT id, timestamp, rule_id, severity, ip_address, user_id, message
                    FROM alerts
                    WHERE LOWER(severity) = LOWER(?)
                    ORDER BY timestamp DESC
                    LIMIT ?
                    """,
                    (severity, limit),
                )
            else:
                cur.execute(
                    """
                    SELECT id, timestamp, rule_id, severity, ip_address, user_id, message
                    FROM alerts
                    ORDER BY timestamp DESC
                    LIMIT ?
                    """,
                    (limit,),
                )
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    # -------------- events --------------

    def insert_event(self, event: SecurityEvent) -> None:
        # json.dumps raises on payloads it cannot encode; the event store absorbs it
        payload = None if event.payload is None else json.dumps(event.payload)
        metadata = json.dumps(event.metadata)
        assert self.conn is not None
        with self._lock:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO events
                    (id, timestamp, type, severity, ip_address, user_id,
                     endpoint, method, payload, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.timestamp,
                    event.type.value,
                    event.severity.value,
                    event.ip_address,
                    event.user_id,
                    event.endpoint,
                    event.method,
                    payload,
                    metadata,
                ),
            )
            self.conn.commit()

    def count_events(self) -> int:
        assert self.conn is not None
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) AS c FROM events").fetchone()
        return row["c"]
