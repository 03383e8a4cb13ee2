"""
SiteVoice Persistence Adapters Package

Adapters for data storage:
- Offline Queue (SQLite)
- Applied idempotency keys (SQLite)
"""

from sitevoice.adapters.persistence.idempotency import IdempotentStorage
from sitevoice.adapters.persistence.offline_queue import SQLiteOfflineQueue

__all__ = [
    "IdempotentStorage",
    "SQLiteOfflineQueue",
]
