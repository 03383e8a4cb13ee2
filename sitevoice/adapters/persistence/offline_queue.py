"""
SQLite Offline Queue Adapter

Durable per-tenant FIFO of writes deferred while the storage collaborator is
unreachable.

Guarantees:
- Order: entries of a tenant are replayed in enqueue order (AUTOINCREMENT)
- Durability: an entry leaves the queue only when storage acknowledged it,
  or moves to the dead-letter table after too many failed replays
- Uniqueness: one entry per (tenant, run); enqueueing a run twice is a no-op
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from sitevoice.core.entities import Intent, OfflineQueueEntry

logger = logging.getLogger(__name__)


class SQLiteOfflineQueue:
    """
    SQLite-based offline queue.

    Implements OfflineQueuePort from core/ports.py.

    Examples:

    ```
    queue = SQLiteOfflineQueue("~/.sitevoice/offline.db")

    entry = queue.enqueue(OfflineQueueEntry(tenant_id="acme", run_id=run.run_id, intent=intent))

    # Later, when the network is back
    while (entry := queue.peek("acme")) is not None:
        storage.execute(...)
        queue.acknowledge(entry.entry_id)
    ```
    """

    def __init__(
        self,
        db_path: str = "~/.sitevoice/offline.db",
        create_if_missing: bool = True,
    ) -> None:
        self.db_path = Path(db_path).expanduser()
        self._lock = threading.Lock()

        if create_if_missing:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

    def _init_database(self) -> None:
        """Initializes the database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS offline_queue (
                    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT UNIQUE NOT NULL,
                    tenant_id TEXT NOT NULL,
                    run_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    principal_id TEXT NOT NULL,
                    language TEXT NOT NULL,
                    intent TEXT NOT NULL,
                    enqueued_at TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    UNIQUE (tenant_id, run_id)
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_tenant
                ON offline_queue(tenant_id, sequence)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS dead_letter (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT UNIQUE NOT NULL,
                    tenant_id TEXT NOT NULL,
                    run_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    principal_id TEXT NOT NULL,
                    language TEXT NOT NULL,
                    intent TEXT NOT NULL,
                    enqueued_at TEXT NOT NULL,
                    retry_count INTEGER NOT NULL,
                    last_error TEXT,
                    moved_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.commit()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connection."""
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def enqueue(self, entry: OfflineQueueEntry) -> OfflineQueueEntry:
        """
        Append an entry to the tenant FIFO.

        Returns:
            The stored entry with its sequence number (the existing one when
            the run was already queued)
        """
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT * FROM offline_queue WHERE tenant_id = ? AND run_id = ?",
                    (entry.tenant_id, entry.run_id),
                )
                existing = cursor.fetchone()
                if existing is not None:
                    logger.debug(f"Run {entry.run_id} already queued for {entry.tenant_id}")
                    return self._row_to_entry(existing)

                cursor.execute(
                    """
                    INSERT INTO offline_queue (
                        entry_id, tenant_id, run_id, operation, principal_id,
                        language, intent, enqueued_at, retry_count, last_error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.entry_id,
                        entry.tenant_id,
                        entry.run_id,
                        entry.operation or entry.intent.action,
                        entry.principal_id,
                        entry.language,
                        json.dumps(entry.intent.to_payload(), ensure_ascii=False),
                        entry.enqueued_at.isoformat(),
                        entry.retry_count,
                        entry.last_error,
                    ),
                )
                conn.commit()
                sequence = cursor.lastrowid

        logger.info(f"Queued {entry.intent.action} for {entry.tenant_id} offline (seq={sequence})")
        return OfflineQueueEntry(
            tenant_id=entry.tenant_id,
            run_id=entry.run_id,
            intent=entry.intent,
            operation=entry.operation or entry.intent.action,
            principal_id=entry.principal_id,
            language=entry.language,
            entry_id=entry.entry_id,
            enqueued_at=entry.enqueued_at,
            retry_count=entry.retry_count,
            last_error=entry.last_error,
            sequence=sequence,
        )

    def peek(self, tenant_id: str) -> Optional[OfflineQueueEntry]:
        """Oldest pending entry of a tenant."""
        entries = self.pending(tenant_id, limit=1)
        return entries[0] if entries else None

    def pending(self, tenant_id: str, limit: int = 100) -> List[OfflineQueueEntry]:
        """Pending entries of a tenant in enqueue order."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM offline_queue WHERE tenant_id = ? ORDER BY sequence ASC LIMIT ?",
                (tenant_id, limit),
            )
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def pending_count(self, tenant_id: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM offline_queue WHERE tenant_id = ?", (tenant_id,))
            return cursor.fetchone()[0]

    def tenants_with_pending(self) -> List[str]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT DISTINCT tenant_id FROM offline_queue ORDER BY tenant_id")
            return [row[0] for row in cursor.fetchall()]

    def acknowledge(self, entry_id: str) -> bool:
        """Remove an entry after storage acknowledged the write."""
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("DELETE FROM offline_queue WHERE entry_id = ?", (entry_id,))
                conn.commit()
                return cursor.rowcount > 0

    def record_failure(self, entry_id: str, error: str) -> int:
        """Increment the retry count; returns the new count (0 if the entry is gone)."""
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "UPDATE offline_queue SET retry_count = retry_count + 1, last_error = ? WHERE entry_id = ?",
                    (error, entry_id),
                )
                cursor.execute("SELECT retry_count FROM offline_queue WHERE entry_id = ?", (entry_id,))
                row = cursor.fetchone()
                conn.commit()
                return row[0] if row else 0

    def move_to_dead_letter(self, entry_id: str, error: str) -> bool:
        """Moves an entry out of the FIFO into the dead-letter table."""
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT * FROM offline_queue WHERE entry_id = ?", (entry_id,))
                row = cursor.fetchone()
                if row is None:
                    return False
                cursor.execute(
                    """
                    INSERT OR REPLACE INTO dead_letter (
                        entry_id, tenant_id, run_id, operation, principal_id,
                        language, intent, enqueued_at, retry_count, last_error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        row["entry_id"],
                        row["tenant_id"],
                        row["run_id"],
                        row["operation"],
                        row["principal_id"],
                        row["language"],
                        row["intent"],
                        row["enqueued_at"],
                        row["retry_count"],
                        error,
                    ),
                )
                cursor.execute("DELETE FROM offline_queue WHERE entry_id = ?", (entry_id,))
                conn.commit()

        logger.warning(f"Offline entry {entry_id} moved to dead letter: {error}")
        return True

    def get_dead_letters(self, tenant_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Dead-lettered entries, newest first."""
        query = "SELECT * FROM dead_letter"
        params: List[Any] = []
        if tenant_id:
            query += " WHERE tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [
                {
                    "entry_id": row["entry_id"],
                    "tenant_id": row["tenant_id"],
                    "run_id": row["run_id"],
                    "operation": row["operation"],
                    "intent": json.loads(row["intent"]),
                    "enqueued_at": row["enqueued_at"],
                    "retry_count": row["retry_count"],
                    "last_error": row["last_error"],
                    "moved_at": row["moved_at"],
                }
                for row in cursor.fetchall()
            ]

    def get_statistics(self) -> Dict[str, Any]:
        """Pending and dead-letter counts per tenant."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                SELECT tenant_id, COUNT(*) as count, MIN(enqueued_at) as oldest
                FROM offline_queue GROUP BY tenant_id
            """)
            pending = {
                row["tenant_id"]: {"count": row["count"], "oldest": row["oldest"]}
                for row in cursor.fetchall()
            }

            cursor.execute("SELECT tenant_id, COUNT(*) as count FROM dead_letter GROUP BY tenant_id")
            dead = {row["tenant_id"]: row["count"] for row in cursor.fetchall()}

        return {
            "total_pending": sum(p["count"] for p in pending.values()),
            "total_dead_letter": sum(dead.values()),
            "pending_by_tenant": pending,
            "dead_letter_by_tenant": dead,
        }

    def export_to_json(self, filepath: str, tenant_id: Optional[str] = None) -> int:
        """
        Export pending entries to a JSON file.

        Returns:
            Number of exported entries
        """
        tenants = [tenant_id] if tenant_id else self.tenants_with_pending()
        entries = []
        for tenant in tenants:
            for entry in self.pending(tenant, limit=100000):
                entries.append({
                    "sequence": entry.sequence,
                    "entry_id": entry.entry_id,
                    "tenant_id": entry.tenant_id,
                    "run_id": entry.run_id,
                    "operation": entry.operation,
                    "intent": entry.intent.to_payload(),
                    "enqueued_at": entry.enqueued_at.isoformat(),
                    "retry_count": entry.retry_count,
                    "last_error": entry.last_error,
                })

        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(entries, f, ensure_ascii=False, indent=2)
        return len(entries)

    def _row_to_entry(self, row: sqlite3.Row) -> OfflineQueueEntry:
        return OfflineQueueEntry(
            tenant_id=row["tenant_id"],
            run_id=row["run_id"],
            intent=Intent.from_payload(json.loads(row["intent"])),
            operation=row["operation"],
            principal_id=row["principal_id"],
            language=row["language"],
            entry_id=row["entry_id"],
            enqueued_at=datetime.fromisoformat(row["enqueued_at"]),
            retry_count=row["retry_count"],
            last_error=row["last_error"],
            sequence=row["sequence"],
        )
