"""
Offline queue replay.

Writes deferred while storage was unreachable are replayed per tenant in
enqueue order. Flushes of one tenant are serialized; different tenants flush
concurrently.

Per entry:
    acknowledged              -> removed from the queue
    NetworkUnavailable        -> flush stops, entry stays at the head
    StorageExecutionFailed    -> dead letter (a business rejection never heals)
    any other error           -> retry count + 1, flush stops; dead letter
                                 once the count reaches max_retries
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sitevoice.core.entities import OfflineQueueEntry
from sitevoice.core.errors import NetworkUnavailable, StorageExecutionFailed
from sitevoice.core.ports import ConnectivityPort, OfflineQueuePort, StoragePort

logger = logging.getLogger(__name__)


@dataclass
class FlushResult:
    tenant_id: str
    applied: int = 0
    failed: int = 0
    dead_lettered: int = 0
    remaining: int = 0
    stopped_offline: bool = False


class OfflineSync:
    """Replays the offline queue against the storage collaborator."""

    def __init__(
        self,
        queue: OfflineQueuePort,
        storage: StoragePort,
        connectivity: Optional[ConnectivityPort] = None,
        max_retries: int = 5,
    ) -> None:
        self.queue = queue
        self.storage = storage
        self.connectivity = connectivity
        self.max_retries = max_retries
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    async def enqueue(self, entry: OfflineQueueEntry) -> OfflineQueueEntry:
        return await asyncio.to_thread(self.queue.enqueue, entry)

    async def pending_count(self, tenant_id: str) -> int:
        return await asyncio.to_thread(self.queue.pending_count, tenant_id)

    async def flush(self, tenant_id: str) -> FlushResult:
        """Replays the tenant's queue until it is empty or an entry cannot be applied."""
        async with self._lock_for(tenant_id):
            result = FlushResult(tenant_id=tenant_id)

            if self.connectivity is not None and not self.connectivity.is_network_available():
                result.stopped_offline = True
                result.remaining = await self.pending_count(tenant_id)
                return result

            while True:
                entry = await asyncio.to_thread(self.queue.peek, tenant_id)
                if entry is None:
                    break

                try:
                    await self.storage.execute(entry.intent, entry.context(), entry.idempotency_key)
                except NetworkUnavailable:
                    logger.info(f"Flush for {tenant_id} stopped: network unavailable")
                    result.stopped_offline = True
                    break
                except StorageExecutionFailed as e:
                    result.failed += 1
                    await asyncio.to_thread(self.queue.move_to_dead_letter, entry.entry_id, str(e))
                    result.dead_lettered += 1
                    continue
                except Exception as e:
                    result.failed += 1
                    count = await asyncio.to_thread(self.queue.record_failure, entry.entry_id, str(e))
                    logger.warning(f"Replay of {entry.entry_id} failed ({count}/{self.max_retries}): {e}")
                    if count >= self.max_retries:
                        await asyncio.to_thread(self.queue.move_to_dead_letter, entry.entry_id, str(e))
                        result.dead_lettered += 1
                        continue
                    break

                await asyncio.to_thread(self.queue.acknowledge, entry.entry_id)
                result.applied += 1

            result.remaining = await self.pending_count(tenant_id)

        logger.info(
            f"Offline flush {tenant_id}: applied={result.applied}, "
            f"dead_lettered={result.dead_lettered}, remaining={result.remaining}"
        )
        return result

    async def flush_all(self) -> Dict[str, FlushResult]:
        """Flushes every tenant with pending entries, tenants in parallel."""
        tenants = await asyncio.to_thread(self.queue.tenants_with_pending)
        results = await asyncio.gather(*(self.flush(tenant) for tenant in tenants))
        return {result.tenant_id: result for result in results}
