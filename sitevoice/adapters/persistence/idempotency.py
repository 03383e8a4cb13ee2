"""
Idempotent storage wrapper.

Remembers every idempotency key the wrapped storage collaborator has applied,
so replaying a write (offline flush, user retry, duplicate delivery) returns
the original receipt instead of writing twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from contextlib import asynccontextmanager, contextmanager
from dataclasses import replace
from pathlib import Path
from typing import AsyncIterator, Dict, Generator, Optional

from sitevoice.core.entities import CommandContext, ExecutionReceipt, Intent
from sitevoice.core.ports import StoragePort

logger = logging.getLogger(__name__)


class IdempotentStorage:
    """
    StoragePort decorator keyed on (tenant, idempotency key).

    Concurrent calls with the same key are serialized, so only the first one
    reaches the wrapped storage.
    """

    def __init__(self, storage: StoragePort, db_path: str = "~/.sitevoice/offline.db") -> None:
        self.storage = storage
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_lock = threading.Lock()
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._key_users: Dict[str, int] = {}
        self._init_database()

    def _init_database(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS applied_keys (
                    tenant_id TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    receipt TEXT NOT NULL,
                    applied_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (tenant_id, idempotency_key)
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

    @asynccontextmanager
    async def _guard(self, key: str) -> AsyncIterator[None]:
        lock = self._key_locks.setdefault(key, asyncio.Lock())
        self._key_users[key] = self._key_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._key_users[key] -= 1
            if self._key_users[key] == 0:
                del self._key_users[key]
                del self._key_locks[key]

    async def execute(
        self,
        intent: Intent,
        context: CommandContext,
        idempotency_key: str,
    ) -> ExecutionReceipt:
        scoped_key = f"{context.tenant_id}:{idempotency_key}"
        async with self._guard(scoped_key):
            stored = await asyncio.to_thread(self._lookup, context.tenant_id, idempotency_key)
            if stored is not None:
                logger.info(f"Key {idempotency_key} already applied for {context.tenant_id}, not writing again")
                return replace(stored, replayed=True)

            receipt = await self.storage.execute(intent, context, idempotency_key)
            await asyncio.to_thread(self._remember, context.tenant_id, idempotency_key, receipt)
            return receipt

    def is_applied(self, tenant_id: str, idempotency_key: str) -> bool:
        return self._lookup(tenant_id, idempotency_key) is not None

    def _lookup(self, tenant_id: str, idempotency_key: str) -> Optional[ExecutionReceipt]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT receipt FROM applied_keys WHERE tenant_id = ? AND idempotency_key = ?",
                (tenant_id, idempotency_key),
            ).fetchone()
        if row is None:
            return None
        data = json.loads(row["receipt"])
        return ExecutionReceipt(
            record_id=data.get("record_id"),
            confirmation=data.get("confirmation", ""),
            requires_confirmation=data.get("requires_confirmation", False),
            data=data.get("data") or {},
        )

    def _remember(self, tenant_id: str, idempotency_key: str, receipt: ExecutionReceipt) -> None:
        payload = json.dumps(
            {
                "record_id": receipt.record_id,
                "confirmation": receipt.confirmation,
                "requires_confirmation": receipt.requires_confirmation,
                "data": receipt.data,
            },
            default=str,
            ensure_ascii=False,
        )
        with self._db_lock:
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT OR IGNORE INTO applied_keys (tenant_id, idempotency_key, receipt) VALUES (?, ?, ?)",
                    (tenant_id, idempotency_key, payload),
                )
                conn.commit()
